"""Unit tests for database and service naming."""

from datetime import date

import pytest

from dbrestore.services.naming import (
    UNKNOWN_SERVICE,
    backup_date,
    dated_database_name,
    service_from_filename,
    strip_backup_suffix,
)


class TestStripBackupSuffix:
    """Tests for strip_backup_suffix()."""

    @pytest.mark.parametrize("filename,expected", [
        ("billing.tar.gz", "billing"),
        ("billing.sql.gz", "billing.sql"),
        ("billing.dump", "billing"),
        ("billing.txt", "billing"),
    ])
    def test_strip(self, filename, expected):
        """Should remove compound suffixes first."""
        assert strip_backup_suffix(filename) == expected


class TestServiceFromFilename:
    """Tests for service_from_filename()."""

    @pytest.mark.parametrize("filename,expected", [
        ("billing-api_2024-01-15_0300.tar.gz", "billing-api"),
        ("billing_20240115.sql", "billing"),
        ("billing_20240115093000.dump", "billing"),
        ("orders-backup.tar.gz", "orders"),
        ("orders_dump_final.sql", "orders"),
        ("/tmp/x/inventory.sql", "inventory"),
    ])
    def test_service(self, filename, expected):
        """Should drop dates and backup markers."""
        assert service_from_filename(filename) == expected

    def test_unknown(self):
        """Should fall back when nothing is left."""
        assert service_from_filename("2024-01-15.sql") != ""
        assert service_from_filename("_backup.sql") == UNKNOWN_SERVICE


class TestBackupDate:
    """Tests for backup_date()."""

    def test_dashed(self):
        """Should parse YYYY-MM-DD."""
        assert backup_date("billing/billing_2024-01-15.tar.gz") == date(2024, 1, 15)

    def test_compact(self):
        """Should parse YYYYMMDD."""
        assert backup_date("billing/billing_20240115.sql") == date(2024, 1, 15)

    def test_missing(self):
        """Should return None without a date."""
        assert backup_date("billing/latest.sql") is None

    def test_invalid_date(self):
        """Should skip impossible dates."""
        assert backup_date("billing_2024-13-45.sql") is None


class TestDatedDatabaseName:
    """Tests for dated_database_name()."""

    def test_cloud(self):
        """Should prefix the environment for cloud backups."""
        assert dated_database_name("billing", environment="dev", on=date(2024, 1, 15)) == "dev_billing_2024_01_15"

    def test_local(self):
        """Should mark local restores."""
        assert dated_database_name("billing", on=date(2024, 1, 15)) == "billing_local_2024_01_15"

    def test_sanitized(self):
        """Should turn dashes and case into a valid identifier."""
        assert dated_database_name("Billing-API", environment="prod", on=date(2024, 1, 15)) == (
            "prod_billing_api_2024_01_15"
        )

    def test_defaults_to_today(self):
        """Should use today's date when none is given."""
        assert dated_database_name("app").endswith(date.today().strftime("%Y_%m_%d"))

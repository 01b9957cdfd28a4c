"""
DB Restore CLI - PostgreSQL restore tool.

Restores a PostgreSQL database from an S3 backup or a local dump file,
verifies the result and optionally registers it as a DBeaver connection.
"""

__version__ = "1.0.0"
__author__ = "DB Restore Team"

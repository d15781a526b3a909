"""
DHIS2 User Sync - Bulk import, update, export and removal of DHIS2 user accounts.

This package provides a batch synchronization engine that reconciles a
client-supplied user record set against the DHIS2 Web API, together with
the retrying transport and connection monitor it runs on.
"""

__version__ = "1.0.0"
__author__ = "DHIS2 User Sync Team"

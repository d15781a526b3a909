"""
Bulk pipelines operating on DHIS2 users.
"""

from dhis2_user_sync.pipelines.base import Pipeline, PreconditionError, ValidationError
from dhis2_user_sync.pipelines.delete import DeletionPipeline
from dhis2_user_sync.pipelines.export import ExportAbortedError, ExportEngine
from dhis2_user_sync.pipelines.passwords import PasswordUpdatePipeline
from dhis2_user_sync.pipelines.upsert import BatchUpsertEngine

__all__ = [
    'Pipeline',
    'PreconditionError',
    'ValidationError',
    'BatchUpsertEngine',
    'DeletionPipeline',
    'ExportAbortedError',
    'ExportEngine',
    'PasswordUpdatePipeline',
]

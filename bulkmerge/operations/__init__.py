"""
=====================================
Bulk operations.
=====================================

Modules:
    bulk: bulk_insert, bulk_upsert, bulk_upsert_with_delete_scope
    orchestrator: UpsertOrchestrator state machine and BulkResult
    cancellation: CancellationToken
"""

__all__ = [
    'bulk_insert', 'bulk_upsert', 'bulk_upsert_with_delete_scope',
    'BulkResult', 'OperationState', 'UpsertOrchestrator', 'CancellationToken',
]

from bulkmerge.operations.bulk import bulk_insert, bulk_upsert, bulk_upsert_with_delete_scope
from bulkmerge.operations.cancellation import CancellationToken
from bulkmerge.operations.orchestrator import BulkResult, OperationState, UpsertOrchestrator

"""
=====================================
Record streaming and bulk loading.
=====================================

Modules:
    reader: RowStreamingSource, a forward-only cursor over records
    copy: BulkCopy, the COPY FROM STDIN transport
"""

__all__ = ['RowStreamingSource', 'BulkCopy', 'BulkCopyOptions', 'encode_copy_value']

from bulkmerge.streaming.copy import BulkCopy, BulkCopyOptions, encode_copy_value
from bulkmerge.streaming.reader import RowStreamingSource

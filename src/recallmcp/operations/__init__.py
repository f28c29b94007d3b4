"""Operations domain — the closed union of memory mutations."""

from recallmcp.operations.schemas import CreateOperation
from recallmcp.operations.schemas import DeleteOperation
from recallmcp.operations.schemas import MemoryOperation
from recallmcp.operations.schemas import MergeOperation
from recallmcp.operations.schemas import OperationType
from recallmcp.operations.schemas import parse_operation
from recallmcp.operations.schemas import ReplaceOperation
from recallmcp.operations.schemas import UpdateOperation

__all__ = [
    "CreateOperation",
    "DeleteOperation",
    "MemoryOperation",
    "MergeOperation",
    "OperationType",
    "ReplaceOperation",
    "UpdateOperation",
    "parse_operation",
]

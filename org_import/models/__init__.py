"""Domain models for the organization structure importer.

This package contains the row, finding, hierarchy, configuration and result
models used throughout the application.
"""

from .config_models import DatabaseConfig, ImportConfig, LimitsConfig, SheetAliasConfig
from .error_record import ErrorRecord
from .hierarchy import HierarchyNode, MoveValidationResult, PendingMove, TreeNode
from .processing_result import ImportResult, ImportStatus
from .row_data import DepartmentRow, ExtractionResult, PositionRow
from .validation_error import ErrorType, Severity, SheetType, ValidationError

__all__ = [
    # Configuration models
    "DatabaseConfig",
    "ImportConfig",
    "LimitsConfig",
    "SheetAliasConfig",
    # Row models
    "DepartmentRow",
    "PositionRow",
    "ExtractionResult",
    # Findings
    "ErrorRecord",
    "ErrorType",
    "Severity",
    "SheetType",
    "ValidationError",
    # Hierarchy
    "HierarchyNode",
    "MoveValidationResult",
    "PendingMove",
    "TreeNode",
    # Results
    "ImportResult",
    "ImportStatus",
]

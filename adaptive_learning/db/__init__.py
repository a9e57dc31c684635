"""
Database Package
================

Exports key database components.
"""

from adaptive_learning.db.models import (
    # Base
    Base,
    # Execution history
    TaskExecutionModel, BehavioralSessionModel,
    ToolExecutionModel, FileOperationModel,
    SuccessfulPatternModel,
    # Knowledge graph
    KnowledgeNodeModel, KnowledgeEdgeModel,
    # Progress events
    ProgressEventModel,
    # Helpers
    validate_json_bag,
)
from adaptive_learning.db.connection import init_db, get_session_maker, close_db

"""
Agent directory: roster actor and its bus-facing service.
"""

from .roster import AgentDirectory, STATUS_FILTERS
from .service import DirectoryService

__all__ = ["AgentDirectory", "DirectoryService", "STATUS_FILTERS"]

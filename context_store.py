import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from models import ProjectContext, SaveContextArguments

logger = logging.getLogger(__name__)


class ProjectContextStore:
    """In-memory project status records keyed by project name"""

    def __init__(self):
        self._projects: Dict[str, ProjectContext] = {}
        self._lock = asyncio.Lock()

    async def save(self, arguments: SaveContextArguments, client_id: str) -> ProjectContext:
        """Store the project's status, replacing any earlier record"""
        record = ProjectContext(
            **arguments.model_dump(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            client_id=client_id,
        )
        async with self._lock:
            self._projects[record.project] = record
        logger.info(f"Saved context for project {record.project!r} (client {client_id})")
        return record

    def get(self, project: str) -> Optional[ProjectContext]:
        return self._projects.get(project)

    def count(self) -> int:
        return len(self._projects)

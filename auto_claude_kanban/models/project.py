"""Project dataclass — a board task list backed by a git working copy."""

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass
class Project:
    id: str
    name: str = ''
    working_directory: Optional[str] = None
    repository_url: Optional[str] = None
    is_initialized: bool = False
    slug: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'Project':
        known = {k: v for k, v in data.items()
                 if k in cls.__dataclass_fields__}
        known['is_initialized'] = bool(data.get('is_initialized'))
        return cls(**known)

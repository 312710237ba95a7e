"""
Per-request working memory.

Tools write what they discover here (resolved ids, display entities, result
lists, effective parameters) so later steps can reference earlier results
and the stop-condition evaluator can decide when enough data is in hand.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


SECTIONS = ('ids', 'entities', 'lists', 'params', 'errors')


@dataclass
class WorkingMemory:
    """Scratch space for one `ask` call. Never persisted."""
    ids: Dict[str, Any] = field(default_factory=dict)
    entities: Dict[str, Any] = field(default_factory=dict)
    lists: Dict[str, List[Any]] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def get_path(self, path: str) -> Any:
        """
        Resolve a dot path such as ``ids.projectId`` or ``entities.project.name``.

        Returns None when any segment is missing.
        """
        if not path or not isinstance(path, str):
            return None
        parts = [p for p in path.strip().split('.') if p]
        if parts and parts[0] == 'memory':
            parts = parts[1:]
        if not parts or parts[0] not in SECTIONS:
            return None

        current: Any = getattr(self, parts[0])
        for part in parts[1:]:
            if isinstance(current, dict):
                current = current.get(part)
            elif isinstance(current, list) and part.isdigit():
                index = int(part)
                current = current[index] if index < len(current) else None
            else:
                return None
            if current is None:
                return None
        return current

    def record_error(self, tool: str, message: str) -> None:
        self.errors.append({'tool': tool, 'message': message})

    @property
    def last_error(self) -> Optional[Dict[str, Any]]:
        return self.errors[-1] if self.errors else None

    def snapshot(self) -> Dict[str, Any]:
        """Compact view for prompts: list sizes instead of list contents."""
        return {
            'ids': dict(self.ids),
            'entities': dict(self.entities),
            'lists': {
                key: len(value) if isinstance(value, list) else 0
                for key, value in self.lists.items()
            },
            'params': dict(self.params),
            'lastError': self.last_error,
        }

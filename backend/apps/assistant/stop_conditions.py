"""
Stop-condition evaluation.

A plan declares the memory artifacts it is working towards, for example
`["lists.tasks"]` or `["ids.projectId"]`. Once every declared artifact is
present the step loop can end early, even with budget left.

Artifact forms:
    lists.*        any list in memory is non-empty
    lists.<key>    that list exists and is non-empty
    anything else  dot path into memory resolves to a truthy value
"""
import logging
from typing import Iterable, Optional

from apps.assistant.memory import WorkingMemory

logger = logging.getLogger(__name__)


def is_artifact_satisfied(artifact: str, memory: WorkingMemory) -> bool:
    ref = str(artifact or '').strip()
    if ref.startswith('memory.'):
        ref = ref[len('memory.'):]
    if not ref:
        return False

    if ref == 'lists.*':
        return any(isinstance(v, list) and len(v) > 0 for v in memory.lists.values())

    if ref.startswith('lists.') and ref.count('.') == 1:
        value = memory.lists.get(ref[len('lists.'):])
        return isinstance(value, list) and len(value) > 0

    if ref.endswith('.*'):
        section = memory.get_path(ref[:-2])
        return isinstance(section, dict) and any(bool(v) for v in section.values())

    return bool(memory.get_path(ref))


def should_stop(stop_when: Optional[Iterable[str]], memory: WorkingMemory) -> bool:
    """True when at least one artifact is declared and all of them are present."""
    artifacts = [a for a in (stop_when or []) if isinstance(a, str) and a.strip()]
    if not artifacts:
        return False
    satisfied = all(is_artifact_satisfied(a, memory) for a in artifacts)
    if satisfied:
        logger.debug(f"Stop conditions satisfied: {artifacts}")
    return satisfied

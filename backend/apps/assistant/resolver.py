"""
Argument resolver: turns human names into the ids tools require.

When a step needs `projectId` but the model only knew the project's name, the
resolver looks the project up by that name and writes the id and entity back
into working memory so later steps bind without another lookup. Other
name -> id bindings are added by registering another `NameBinding`.
"""
import difflib
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from asgiref.sync import sync_to_async
from django.db import models

from apps.assistant.memory import WorkingMemory
from apps.workspace.models import NoteSession, Project

logger = logging.getLogger(__name__)

FUZZY_CUTOFF = 0.75
MAX_FUZZY_CANDIDATES = 500


def is_identifier(value: str) -> bool:
    try:
        uuid.UUID(value.strip())
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class NameBinding:
    """How to resolve one id argument from a name."""
    arg_name: str                  # e.g. "projectId"
    entity_key: str                # memory.entities key, e.g. "project"
    model: Type[models.Model]
    name_field: str                # column holding the display name
    name_args: Tuple[str, ...]     # step args that may carry the name

    def candidate_name(self, args: Dict[str, Any], memory: WorkingMemory) -> Optional[str]:
        for key in self.name_args:
            value = args.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        entity = memory.entities.get(self.entity_key)
        if isinstance(entity, dict):
            value = entity.get('name')
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    def lookup(self, name: str) -> Optional[models.Model]:
        """Case-insensitive exact, then substring, then closest-spelling match."""
        manager = self.model.objects
        field = self.name_field

        match = manager.filter(**{f'{field}__iexact': name}).first()
        if match is not None:
            return match

        match = manager.filter(**{f'{field}__icontains': name}).first()
        if match is not None:
            return match

        rows = list(manager.values_list('pk', field)[:MAX_FUZZY_CANDIDATES])
        by_name = {}
        for pk, value in rows:
            if value:
                by_name.setdefault(value.lower(), pk)
        close = difflib.get_close_matches(name.lower(), list(by_name), n=1, cutoff=FUZZY_CUTOFF)
        if close:
            return manager.filter(pk=by_name[close[0]]).first()
        return None

    def project_entity(self, row: models.Model) -> Dict[str, Any]:
        entity = {'name': getattr(row, self.name_field, '') or ''}
        description = getattr(row, 'description', None)
        if description:
            entity['description'] = description
        return entity


PROJECT_BINDING = NameBinding(
    arg_name='projectId',
    entity_key='project',
    model=Project,
    name_field='name',
    name_args=('name', 'projectName'),
)

SESSION_BINDING = NameBinding(
    arg_name='sessionId',
    entity_key='session',
    model=NoteSession,
    name_field='name',
    name_args=('sessionName',),
)


class ArgumentResolver:
    """Fills missing id arguments from names, updating memory on success."""

    def __init__(self, bindings: Sequence[NameBinding] = (PROJECT_BINDING, SESSION_BINDING)):
        self._bindings: Dict[str, NameBinding] = {b.arg_name: b for b in bindings}

    def register(self, binding: NameBinding) -> None:
        self._bindings[binding.arg_name] = binding

    def can_resolve(self, arg_name: str) -> bool:
        return arg_name in self._bindings

    @property
    def arg_names(self) -> List[str]:
        return list(self._bindings)

    async def ensure_arg(
        self,
        arg_name: str,
        args: Dict[str, Any],
        memory: WorkingMemory,
    ) -> Dict[str, Any]:
        """
        Return a copy of `args` with `arg_name` filled in when it can be.

        Order: value already in args, then `memory.ids`, then a name lookup.
        An unresolvable argument is simply left missing; the caller decides
        what that means.

        A value that is not an id (the model wrote "Website Redesign" where
        the project id belongs) is looked up as a name. If that fails the
        value is kept as given.
        """
        resolved = dict(args)
        binding = self._bindings.get(arg_name)
        value = resolved.get(arg_name)
        if value:
            if binding is None or not isinstance(value, str) or is_identifier(value):
                return resolved
            name = value.strip()
        else:
            known = memory.ids.get(arg_name)
            if known:
                resolved[arg_name] = known
                return resolved

            if binding is None:
                return resolved

            name = binding.candidate_name(resolved, memory)
            if not name:
                logger.debug(f"No candidate name to resolve {arg_name}")
                return resolved

        row = await sync_to_async(binding.lookup)(name)
        if row is None:
            logger.info(f"Could not resolve {arg_name} from name {name!r}")
            return resolved

        resolved_id = str(row.pk)
        resolved[arg_name] = resolved_id
        memory.ids[arg_name] = resolved_id
        memory.entities[binding.entity_key] = binding.project_entity(row)
        logger.info(f"Resolved {arg_name} from name {name!r}")
        return resolved


def default_resolver() -> ArgumentResolver:
    return ArgumentResolver()

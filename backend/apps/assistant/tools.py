"""
Read-only workspace tools for the assistant.

Each tool is a coroutine `(args, memory) -> ToolOutput`. The ORM query runs in
a worker thread via `sync_to_async`; the handler then writes a compact,
human-field-only projection into working memory and returns a JSON payload
of the form `{"<items>": [...], "total": n}`.

Tools never write to the data store.
"""
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from asgiref.sync import sync_to_async
from django.core.exceptions import ValidationError
from django.utils import timezone

from apps.assistant.memory import WorkingMemory
from apps.assistant.registry import Tool, ToolInputError, ToolOutput, ToolRegistry, ToolSchema
from apps.assistant import selectors
from apps.assistant import vector_index
from apps.workspace.models import (
    Alarm,
    FileDoc,
    Link,
    Note,
    NoteLine,
    NoteSession,
    Person,
    Project,
    Task,
    Team,
)

logger = logging.getLogger(__name__)

# Hard limits
CLAMP_LENGTH = 300
MAX_LIST_ROWS = 200
SEARCH_DEFAULT_LIMIT = 8
SEARCH_MAX_LIMIT = 50
COLLECTION_DEFAULT_LIMIT = 50
COLLECTION_MAX_LIMIT = 200


# =============================================================================
# Helpers
# =============================================================================

def clamp_text(value: Any, max_len: int = CLAMP_LENGTH) -> str:
    text = '' if value is None else str(value)
    if len(text) <= max_len:
        return text
    return text[:max_len - 1] + '…'


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dump(payload: Dict[str, Any]) -> ToolOutput:
    return ToolOutput(output=json.dumps(payload, default=str))


def _listing(key: str, items: List[Dict[str, Any]], total: int) -> ToolOutput:
    """`{key: items, "total": n}`, flagged `truncated` when rows were left out."""
    payload: Dict[str, Any] = {key: items, 'total': total}
    if total > len(items):
        payload['truncated'] = True
    return _dump(payload)


def _as_uuid(value: Any, arg_name: str) -> uuid.UUID:
    try:
        return uuid.UUID(selectors.clean_str(value))
    except (ValueError, AttributeError):
        raise ToolInputError(f"{arg_name} is not a valid identifier")


def _clamp_limit(value: Any, default: int, maximum: int) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    if limit <= 0:
        return default
    return max(1, min(maximum, limit))


# =============================================================================
# Projections (what memory and the LLM get to see)
# =============================================================================

def project_task(task: Task) -> Dict[str, Any]:
    return {
        'title': clamp_text(task.title),
        'status': task.status,
        'deadline': _iso(task.deadline),
        'isUrgent': task.is_urgent,
        'isImportant': task.is_important,
        'tags': list(task.tags or []),
        'project': task.project.name if task.project_id else None,
    }


def project_project(project: Project) -> Dict[str, Any]:
    return {
        'name': clamp_text(project.name),
        'description': clamp_text(project.description),
        'status': project.status or None,
    }


def project_note(note: Note) -> Dict[str, Any]:
    return {
        'title': clamp_text(note.title),
        'content': clamp_text(note.content),
        'updatedAt': _iso(note.updated_at),
    }


def project_session(session: NoteSession) -> Dict[str, Any]:
    return {
        'name': clamp_text(session.name),
        'aiSummary': clamp_text(session.ai_summary),
        'createdAt': _iso(session.created_at),
    }


def project_line(line: NoteLine) -> Dict[str, Any]:
    return {'content': clamp_text(line.content), 'createdAt': _iso(line.created_at)}


def project_link(link: Link) -> Dict[str, Any]:
    return {'name': clamp_text(link.name), 'url': link.url}


def project_person(person: Person) -> Dict[str, Any]:
    return {
        'name': clamp_text(person.name),
        'email': person.email or None,
        'role': person.role or None,
        'team': person.team.name if person.team_id else None,
    }


def project_team(team: Team) -> Dict[str, Any]:
    return {'name': clamp_text(team.name)}


def project_file(file_doc: FileDoc) -> Dict[str, Any]:
    return {
        'name': clamp_text(file_doc.name),
        'mimeType': file_doc.mime_type or None,
        'sizeBytes': file_doc.size_bytes,
    }


def project_alarm(alarm: Alarm) -> Dict[str, Any]:
    return {
        'title': clamp_text(alarm.title),
        'enabled': alarm.enabled,
        'nextTriggerAt': _iso(alarm.next_trigger_at),
    }


# =============================================================================
# Synchronous ORM queries (run through sync_to_async)
# =============================================================================

def _fetch_tasks(query, tag: str = '') -> Tuple[List[Dict[str, Any]], int]:
    """Projected tasks (at most MAX_LIST_ROWS) and the number that matched."""
    queryset = Task.objects.filter(query).select_related('project')
    if not tag:
        return _fetch_list(queryset, project_task)

    # Tags live in a JSON list, so they are matched here over the whole queryset
    tasks = []
    total = 0
    for task in queryset.iterator():
        if not selectors.has_tag(task.tags, tag):
            continue
        total += 1
        if len(tasks) < MAX_LIST_ROWS:
            tasks.append(project_task(task))
    return tasks, total


def _fetch_project_by_name(name: str) -> Optional[Project]:
    project = Project.objects.filter(selectors.build_project_by_name_filter(name)).first()
    if project is None:
        project = Project.objects.filter(selectors.build_project_name_contains_filter(name)).first()
    return project


def _fetch_list(
    queryset,
    projector: Callable[[Any], Dict[str, Any]],
    limit: int = MAX_LIST_ROWS,
) -> Tuple[List[Dict[str, Any]], int]:
    return [projector(row) for row in queryset[:limit]], queryset.count()


COLLECTION_MODELS = {
    'tasks': (Task, project_task),
    'projects': (Project, project_project),
    'notes': (Note, project_note),
    'noteSessions': (NoteSession, project_session),
    'noteLines': (NoteLine, project_line),
    'links': (Link, project_link),
    'people': (Person, project_person),
    'teams': (Team, project_team),
    'files': (FileDoc, project_file),
    'alarms': (Alarm, project_alarm),
}

# Selecting these makes no sense to a reader; they stay out of projections
ID_FIELDS = {'projectId', 'sessionId'}


def _fetch_collection(
    collection: str,
    where: Any,
    sort: Any,
    select: List[str],
    limit: int,
) -> Tuple[List[Dict[str, Any]], int]:
    model, projector = COLLECTION_MODELS[collection]
    order = selectors.compile_sort(collection, sort)
    try:
        # Lookup values are validated when the filter is built, not when it runs
        queryset = model.objects.filter(selectors.compile_where(collection, where))
        if order:
            queryset = queryset.order_by(*order)
        if collection == 'tasks':
            queryset = queryset.select_related('project')
        elif collection == 'people':
            queryset = queryset.select_related('team')
        rows = list(queryset[:limit])
        total = queryset.count()
    except (ValidationError, ValueError, TypeError) as e:
        raise ToolInputError(f"Invalid where clause for {collection}: {e}")

    allowed = selectors.FIELD_ALLOWLIST[collection]
    items = []
    for row in rows:
        if select:
            item = {
                field: _plain(getattr(row, allowed[field]))
                for field in select
                if field not in ID_FIELDS
            }
        else:
            item = projector(row)
        items.append(item)
    return items, total


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, str):
        return clamp_text(value)
    return value


def _fetch_preview(kind: str, raw_id: str) -> Dict[str, Any]:
    """Title (and URL for links) of a search hit. Ids may be prefixed `kind:id`."""
    doc_id = str(raw_id or '').split(':')[-1]
    try:
        pk = uuid.UUID(doc_id)
    except ValueError:
        return {'title': f'({kind or "doc"})', 'url': None}

    if kind == 'project':
        row = Project.objects.filter(pk=pk).first()
        return {'title': row.name if row else '(project)', 'url': None}
    if kind == 'task':
        row = Task.objects.filter(pk=pk).first()
        return {'title': row.title if row else '(task)', 'url': None}
    if kind == 'note':
        row = Note.objects.filter(pk=pk).first()
        return {'title': (row.title if row else '') or '(note)', 'url': None}
    if kind == 'session':
        row = NoteSession.objects.filter(pk=pk).first()
        return {'title': (row.name if row else '') or '(session)', 'url': None}
    if kind == 'line':
        row = NoteLine.objects.filter(pk=pk).first()
        return {'title': clamp_text(row.content, 80) if row else '(line)', 'url': None}
    if kind == 'alarm':
        row = Alarm.objects.filter(pk=pk).first()
        return {'title': row.title if row else '(alarm)', 'url': None}
    if kind == 'link':
        row = Link.objects.filter(pk=pk).first()
        if row is None:
            return {'title': '(link)', 'url': None}
        return {'title': row.name or row.url, 'url': row.url}
    return {'title': '(doc)', 'url': None}


# =============================================================================
# Task tools
# =============================================================================

async def chat_tasks(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    """Open tasks due before a date (default: end of tomorrow, UTC)."""
    raw_due = args.get('dueBefore')
    if selectors.clean_str(raw_due):
        due_before = selectors.parse_datetime_arg(raw_due)
        if due_before is None:
            logger.warning(f"Ignoring unparseable dueBefore: {raw_due!r}")
    else:
        due_before = selectors.end_of_tomorrow()

    project_id = args.get('projectId')
    if selectors.clean_str(project_id):
        project_id = _as_uuid(project_id, 'projectId')

    query = selectors.build_tasks_filter(
        project_id=project_id,
        status=args.get('status'),
        due_before=due_before,
    )
    tasks, total = await sync_to_async(_fetch_tasks)(query)

    memory.lists['tasks'] = tasks
    memory.params['dueBefore'] = _iso(due_before)
    return _listing('tasks', tasks, total)


async def chat_overdue(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    now = selectors.parse_datetime_arg(args.get('now')) or timezone.now()
    tasks, total = await sync_to_async(_fetch_tasks)(selectors.build_overdue_filter(now))

    memory.lists['tasks'] = tasks
    memory.params['now'] = now.isoformat()
    return _listing('tasks', tasks, total)


async def chat_tasks_by_project(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    project_id = _as_uuid(args.get('projectId'), 'projectId')
    tasks, total = await sync_to_async(_fetch_tasks)(selectors.build_by_project_filter(project_id))

    memory.lists['tasks'] = tasks
    return _listing('tasks', tasks, total)


async def chat_tasks_filter(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    project_id = args.get('projectId')
    if selectors.clean_str(project_id):
        project_id = _as_uuid(project_id, 'projectId')

    query = selectors.build_filter_filter(
        status=args.get('status'),
        project_id=project_id,
        important=args.get('important'),
        urgent=args.get('urgent'),
    )
    tag = selectors.clean_str(args.get('tag'))
    tasks, total = await sync_to_async(_fetch_tasks)(query, tag)

    memory.lists['tasks'] = tasks
    return _listing('tasks', tasks, total)


# =============================================================================
# Project tools
# =============================================================================

async def chat_projects_list(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    projects, total = await sync_to_async(_fetch_list)(Project.objects.all(), project_project)
    memory.lists['projects'] = projects
    return _listing('projects', projects, total)


async def chat_project_by_name(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    name = selectors.clean_str(args.get('name'))
    if not name:
        raise ToolInputError("name must not be empty")

    project = await sync_to_async(_fetch_project_by_name)(name)
    if project is None:
        return _dump({'project': None})

    projected = project_project(project)
    memory.ids['projectId'] = str(project.id)
    memory.entities['project'] = projected
    return _dump({'project': projected})


# =============================================================================
# Notes, links, files
# =============================================================================

async def chat_notes_by_project(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    project_id = _as_uuid(args.get('projectId'), 'projectId')
    notes, total = await sync_to_async(_fetch_list)(Note.objects.filter(project_id=project_id), project_note)
    memory.lists['notes'] = notes
    return _listing('notes', notes, total)


async def chat_note_sessions_by_project(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    project_id = _as_uuid(args.get('projectId'), 'projectId')

    def fetch():
        queryset = NoteSession.objects.filter(project_id=project_id)
        rows = list(queryset[:MAX_LIST_ROWS])
        return rows, [project_session(s) for s in rows], queryset.count()

    rows, sessions, total = await sync_to_async(fetch)()
    memory.lists['noteSessions'] = sessions
    if total == 1:
        # A single session is unambiguous, so later line lookups can bind to it
        memory.ids['sessionId'] = str(rows[0].id)
        memory.entities['session'] = sessions[0]
    return _listing('sessions', sessions, total)


async def chat_note_lines_by_session(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    session_id = _as_uuid(args.get('sessionId'), 'sessionId')
    lines, total = await sync_to_async(_fetch_list)(NoteLine.objects.filter(session_id=session_id), project_line)
    memory.lists['noteLines'] = lines
    return _listing('lines', lines, total)


async def chat_links_by_project(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    project_id = _as_uuid(args.get('projectId'), 'projectId')
    links, total = await sync_to_async(_fetch_list)(Link.objects.filter(project_id=project_id), project_link)
    memory.lists['links'] = links
    return _listing('links', links, total)


async def chat_files_by_project(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    project_id = _as_uuid(args.get('projectId'), 'projectId')
    files, total = await sync_to_async(_fetch_list)(FileDoc.objects.filter(project_id=project_id), project_file)
    memory.lists['files'] = files
    return _listing('files', files, total)


# =============================================================================
# People, teams, alarms
# =============================================================================

async def chat_people_list(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    queryset = Person.objects.select_related('team')
    team_id = args.get('teamId')
    if selectors.clean_str(team_id):
        queryset = queryset.filter(team_id=_as_uuid(team_id, 'teamId'))
    people, total = await sync_to_async(_fetch_list)(queryset, project_person)
    memory.lists['people'] = people
    return _listing('people', people, total)


async def chat_teams_list(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    teams, total = await sync_to_async(_fetch_list)(Team.objects.all(), project_team)
    memory.lists['teams'] = teams
    return _listing('teams', teams, total)


async def chat_alarms_list(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    queryset = Alarm.objects.all()
    enabled = selectors.coerce_bool(args.get('enabled'))
    if enabled is not None:
        queryset = queryset.filter(enabled=enabled)
    alarms, total = await sync_to_async(_fetch_list)(queryset, project_alarm)
    memory.lists['alarms'] = alarms
    return _listing('alarms', alarms, total)


# =============================================================================
# Semantic search and generic collection query
# =============================================================================

async def chat_semantic_search(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    limit = _clamp_limit(args.get('limit'), SEARCH_DEFAULT_LIMIT, SEARCH_MAX_LIMIT)
    query = selectors.clean_str(args.get('query'))

    if not vector_index.is_vector_search_enabled():
        memory.lists['searchResults'] = []
        return _dump({'results': [], 'total': 0, 'disabled': True})

    hits = await vector_index.search_workspace(query, limit=limit)

    def previews():
        return [_fetch_preview(hit.kind, hit.doc_id) for hit in hits]

    fetched = await sync_to_async(previews)()
    results = [
        {
            'kind': hit.kind,
            'id': hit.doc_id.split(':')[-1],
            'title': preview['title'],
            'url': preview['url'],
            'score': hit.score,
        }
        for hit, preview in zip(hits, fetched)
    ]
    memory.lists['searchResults'] = results
    return _dump({'results': results, 'total': len(results)})


async def chat_collection_query(args: Dict[str, Any], memory: WorkingMemory) -> ToolOutput:
    collection = selectors.clean_str(args.get('collection'))
    if collection not in COLLECTION_MODELS:
        raise ToolInputError(f"Unsupported collection: {collection or '(empty)'}")

    select = selectors.compile_select(collection, args.get('select'))
    limit = _clamp_limit(args.get('limit'), COLLECTION_DEFAULT_LIMIT, COLLECTION_MAX_LIMIT)
    items, total = await sync_to_async(_fetch_collection)(
        collection,
        args.get('where') or {},
        args.get('sort') or {},
        select,
        limit,
    )

    key = selectors.get_list_key_for_collection(collection)
    memory.lists[key] = items
    return _listing('items', items, total)


# =============================================================================
# Registry wiring
# =============================================================================

_STRING = {'type': 'string'}
_DATE = {'type': 'string', 'description': 'ISO 8601 date or datetime'}
_PROJECT_ID = {'type': 'string', 'description': 'Project id, usually {"var": "ids.projectId"}'}

TOOL_SPECS = [
    ('chat_tasks', chat_tasks, (),
     "Open tasks due before a date (defaults to end of tomorrow). Use for deadlines.",
     {'dueBefore': _DATE, 'projectId': _PROJECT_ID, 'status': _STRING}),
    ('chat_overdue', chat_overdue, (),
     "Tasks not done whose deadline has passed.",
     {'now': _DATE}),
    ('chat_tasksByProject', chat_tasks_by_project, ('projectId',),
     "Open tasks of one project.",
     {'projectId': _PROJECT_ID}),
    ('chat_tasksFilter', chat_tasks_filter, (),
     "Tasks filtered by status, tag, project, importance or urgency.",
     {'status': _STRING, 'tag': _STRING, 'projectId': _PROJECT_ID,
      'important': {'type': 'boolean'}, 'urgent': {'type': 'boolean'}}),
    ('chat_projectsList', chat_projects_list, (),
     "All projects with name, description and status.",
     {}),
    ('chat_projectByName', chat_project_by_name, ('name',),
     "Find one project by name; stores its id for later steps.",
     {'name': _STRING}),
    ('chat_semanticSearch', chat_semantic_search, ('query',),
     "Semantic search across projects, tasks, notes, sessions, links and alarms.",
     {'query': _STRING, 'limit': {'type': 'integer', 'minimum': 1, 'maximum': SEARCH_MAX_LIMIT}}),
    ('chat_notesByProject', chat_notes_by_project, ('projectId',),
     "Notes of one project.",
     {'projectId': _PROJECT_ID}),
    ('chat_noteSessionsByProject', chat_note_sessions_by_project, ('projectId',),
     "Note-taking sessions of one project.",
     {'projectId': _PROJECT_ID}),
    ('chat_noteLinesBySession', chat_note_lines_by_session, ('sessionId',),
     "Lines written during one note session.",
     {'sessionId': {'type': 'string', 'description': 'Session id, usually {"var": "ids.sessionId"}'}}),
    ('chat_linksByProject', chat_links_by_project, ('projectId',),
     "Links saved on one project.",
     {'projectId': _PROJECT_ID}),
    ('chat_peopleList', chat_people_list, (),
     "People, optionally restricted to one team.",
     {'teamId': _STRING}),
    ('chat_teamsList', chat_teams_list, (),
     "All teams.",
     {}),
    ('chat_filesByProject', chat_files_by_project, ('projectId',),
     "Files attached to one project.",
     {'projectId': _PROJECT_ID}),
    ('chat_alarmsList', chat_alarms_list, (),
     "Alarms, optionally only enabled or disabled ones.",
     {'enabled': {'type': 'boolean'}}),
    ('chat_collectionQuery', chat_collection_query, ('collection',),
     "Generic read-only query on one collection with a where/select/sort mini-DSL.",
     {'collection': {'type': 'string', 'enum': sorted(COLLECTION_MODELS)},
      'where': {'type': 'object'}, 'select': {'type': 'array', 'items': _STRING},
      'sort': {'type': 'object'},
      'limit': {'type': 'integer', 'minimum': 1, 'maximum': COLLECTION_MAX_LIMIT}}),
]


def build_default_registry() -> ToolRegistry:
    """Registry holding every workspace tool."""
    registry = ToolRegistry()
    for name, handler, required, description, parameters in TOOL_SPECS:
        registry.register(Tool(
            name=name,
            schema=ToolSchema(required=required, read_only=True),
            execute=handler,
            description=description,
            parameters=parameters,
        ))
    return registry

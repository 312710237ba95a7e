"""
Query builders for the read-only tools.

Everything here is pure: arguments in, Django `Q` objects (or plain values)
out. No database access happens in this module, which keeps the filtering
rules easy to test without fixtures.
"""
import logging
from datetime import datetime, time, timedelta, timezone as dt_timezone
from typing import Any, Dict, List, Optional

from django.db.models import Q
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

logger = logging.getLogger(__name__)

DONE = 'done'

# Fields the collection query DSL may filter, sort or select on, keyed by the
# camelCase name the model sees, mapped to the ORM field.
FIELD_ALLOWLIST: Dict[str, Dict[str, str]] = {
    'tasks': {
        'title': 'title',
        'status': 'status',
        'deadline': 'deadline',
        'projectId': 'project_id',
        'isUrgent': 'is_urgent',
        'isImportant': 'is_important',
        'tags': 'tags',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
    'projects': {
        'name': 'name',
        'description': 'description',
        'status': 'status',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
    'notes': {
        'projectId': 'project_id',
        'title': 'title',
        'content': 'content',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
    'noteSessions': {
        'projectId': 'project_id',
        'name': 'name',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
    'noteLines': {
        'sessionId': 'session_id',
        'content': 'content',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
    'links': {
        'projectId': 'project_id',
        'name': 'name',
        'url': 'url',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
    'people': {
        'name': 'name',
        'role': 'role',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
    'teams': {
        'name': 'name',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
    'files': {
        'projectId': 'project_id',
        'name': 'name',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
    'alarms': {
        'title': 'title',
        'enabled': 'enabled',
        'when': 'next_trigger_at',
        'createdAt': 'created_at',
        'updatedAt': 'updated_at',
    },
}

# JSON list columns cannot be compared portably, so they are select-only
SELECT_ONLY_FIELDS = {'tags'}

COMPARISON_LOOKUPS = {
    'eq': 'exact',
    'lt': 'lt',
    'lte': 'lte',
    'gt': 'gt',
    'gte': 'gte',
    'in': 'in',
}

TRUE_VALUES = ('true', '1', 'yes')
FALSE_VALUES = ('false', '0', 'no')


# =============================================================================
# Argument coercion
# =============================================================================

def clean_str(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip()


def coerce_bool(value: Any) -> Optional[bool]:
    """Accept real booleans and their usual string spellings; None otherwise."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = clean_str(value).lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def parse_datetime_arg(value: Any) -> Optional[datetime]:
    """
    Parse an ISO date or datetime argument into an aware datetime.

    A bare date means the end of that day. Returns None for anything that
    does not parse.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = clean_str(value)
        if not text:
            return None
        # Checked first: parse_datetime also accepts a bare date, as midnight
        try:
            day = parse_date(text)
        except ValueError:
            day = None
        if day is not None:
            parsed = datetime.combine(day, time(23, 59, 59))
        else:
            try:
                parsed = parse_datetime(text.replace('Z', '+00:00'))
            except ValueError:
                parsed = None
            if parsed is None:
                return None

    if timezone.is_naive(parsed):
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed


def end_of_tomorrow(now: Optional[datetime] = None) -> datetime:
    """23:59:59 UTC on the day after `now`."""
    now = now or timezone.now()
    tomorrow = now.astimezone(dt_timezone.utc).date() + timedelta(days=1)
    return datetime.combine(tomorrow, time(23, 59, 59), tzinfo=dt_timezone.utc)


# =============================================================================
# Task selectors
# =============================================================================

def build_tasks_filter(
    project_id: Any = None,
    status: Any = None,
    due_before: Optional[datetime] = None,
) -> Q:
    """Open tasks (or tasks in an explicit status), optionally due by a date."""
    query = Q()
    project_id = clean_str(project_id)
    status = clean_str(status)

    if project_id:
        query &= Q(project_id=project_id)
    if status:
        query &= Q(status=status)
    else:
        query &= ~Q(status=DONE)
    if due_before is not None:
        query &= Q(deadline__isnull=False, deadline__lte=due_before)
    return query


def build_overdue_filter(now: datetime) -> Q:
    return ~Q(status=DONE) & Q(deadline__isnull=False, deadline__lte=now)


def build_by_project_filter(project_id: Any) -> Q:
    return Q(project_id=clean_str(project_id)) & ~Q(status=DONE)


def build_filter_filter(
    status: Any = None,
    project_id: Any = None,
    important: Any = None,
    urgent: Any = None,
) -> Q:
    """Free combination of task attributes. Tag matching happens in Python."""
    query = Q()
    status = clean_str(status)
    project_id = clean_str(project_id)
    important = coerce_bool(important)
    urgent = coerce_bool(urgent)

    if status:
        query &= Q(status=status)
    if project_id:
        query &= Q(project_id=project_id)
    if important is not None:
        query &= Q(is_important=important)
    if urgent is not None:
        query &= Q(is_urgent=urgent)
    return query


def has_tag(tags: Any, tag: str) -> bool:
    if not tag:
        return True
    if not isinstance(tags, list):
        return False
    wanted = tag.strip().lower()
    return any(str(t).strip().lower() == wanted for t in tags)


# =============================================================================
# Project selectors
# =============================================================================

def build_project_by_name_filter(name: Any) -> Q:
    return Q(name__iexact=clean_str(name))


def build_project_name_contains_filter(name: Any) -> Q:
    return Q(name__icontains=clean_str(name))


# =============================================================================
# Collection query DSL
# =============================================================================

def get_list_key_for_collection(collection: str) -> str:
    """Memory list key a collection query writes to (same as the collection name)."""
    return clean_str(collection)


def compile_where(collection: str, where: Any) -> Q:
    """
    Compile the `where` mini-DSL into a `Q`.

    Supported shapes::

        {"status": "todo"}                          equality
        {"deadline": {"lte": "2025-01-31"}}         eq, ne, lt, lte, gt, gte, in, nin
        {"or": [{...}, {...}], "and": [{...}]}      nested logic

    Fields outside the collection's allowlist and unknown operators are dropped.
    """
    allowed = FIELD_ALLOWLIST.get(clean_str(collection), {})
    return _compile_node(allowed, where)


def _compile_node(allowed: Dict[str, str], node: Any) -> Q:
    if not isinstance(node, dict):
        return Q()

    query = Q()
    and_nodes = node.get('and')
    if isinstance(and_nodes, list):
        for child in and_nodes:
            query &= _compile_node(allowed, child)

    or_nodes = node.get('or')
    if isinstance(or_nodes, list):
        or_query = Q()
        for child in or_nodes:
            compiled = _compile_node(allowed, child)
            if compiled:
                or_query |= compiled
        if or_query:
            query &= or_query

    for key, value in node.items():
        if key in ('and', 'or'):
            continue
        orm_field = allowed.get(key)
        if not orm_field or key in SELECT_ONLY_FIELDS:
            if orm_field is None:
                logger.debug(f"Dropping non-allowlisted field in where: {key}")
            continue
        query &= _compile_comparison(orm_field, value)

    return query


def _compile_comparison(orm_field: str, value: Any) -> Q:
    if not isinstance(value, dict):
        return Q(**{orm_field: value})

    query = Q()
    for op, operand in value.items():
        if op in ('in', 'nin') and not isinstance(operand, list):
            operand = [operand]
        if op == 'ne':
            query &= ~Q(**{orm_field: operand})
        elif op == 'nin':
            query &= ~Q(**{f'{orm_field}__in': operand})
        elif op in COMPARISON_LOOKUPS:
            query &= Q(**{f'{orm_field}__{COMPARISON_LOOKUPS[op]}': operand})
        else:
            logger.debug(f"Dropping unknown operator in where: {op}")
    return query


def compile_sort(collection: str, sort: Any) -> List[str]:
    """`{"deadline": 1, "title": -1}` -> `['deadline', '-title']`."""
    allowed = FIELD_ALLOWLIST.get(clean_str(collection), {})
    if not isinstance(sort, dict):
        return []
    order = []
    for key, direction in sort.items():
        orm_field = allowed.get(key)
        if not orm_field or key in SELECT_ONLY_FIELDS:
            continue
        try:
            descending = int(direction) < 0
        except (TypeError, ValueError):
            descending = clean_str(direction).lower() == 'desc'
        order.append(f'-{orm_field}' if descending else orm_field)
    return order


def compile_select(collection: str, select: Any) -> List[str]:
    """Keep only allowlisted field names, preserving order."""
    allowed = FIELD_ALLOWLIST.get(clean_str(collection), {})
    if not isinstance(select, list):
        return []
    return [f for f in select if isinstance(f, str) and f in allowed]

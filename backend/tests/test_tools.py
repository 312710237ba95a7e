"""
Tests for the read-only workspace tools against the database.
"""
import json
import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import AsyncMock, patch

import pytest
from asgiref.sync import async_to_sync
from django.utils import timezone

from apps.assistant import tools
from apps.assistant.memory import WorkingMemory
from apps.assistant.registry import ToolInputError
from apps.assistant.vector_index import VectorHit
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


def run_tool(handler, args=None, memory=None):
    memory = memory if memory is not None else WorkingMemory()
    output = async_to_sync(handler)(args or {}, memory)
    return json.loads(output.output), memory


@pytest.fixture
def alpha():
    return Project.objects.create(name='Alpha Launch', description='Q3 release', status='active')


@pytest.fixture
def beta():
    return Project.objects.create(name='Beta', description='Research')


# ============================================================================
# Helpers
# ============================================================================

class TestHelpers:
    """Tests for text clamping and limits."""

    def test_clamp_text(self):
        assert tools.clamp_text('short') == 'short'
        clamped = tools.clamp_text('x' * 400)
        assert len(clamped) == tools.CLAMP_LENGTH
        assert clamped.endswith('…')
        assert tools.clamp_text(None) == ''

    @pytest.mark.parametrize('value,expected', [
        (None, 8), ('abc', 8), (0, 8), (-3, 8), (5, 5), ('12', 12), (500, 50),
    ])
    def test_clamp_limit(self, value, expected):
        assert tools._clamp_limit(value, 8, 50) == expected


# ============================================================================
# Task tools
# ============================================================================

@pytest.mark.django_db
class TestTaskTools:
    """Deadline, overdue, per-project and filtered task queries."""

    def test_tasks_due_by_end_of_tomorrow_excludes_done(self, alpha):
        now = timezone.now()
        Task.objects.create(title='Write report', deadline=now + timedelta(hours=1), project=alpha)
        Task.objects.create(title='Already shipped', deadline=now + timedelta(hours=2), status='done')
        Task.objects.create(title='Next week', deadline=now + timedelta(days=5))
        Task.objects.create(title='Someday')

        data, memory = run_tool(tools.chat_tasks)

        assert [t['title'] for t in data['tasks']] == ['Write report']
        assert data['total'] == 1
        assert data['tasks'][0]['project'] == 'Alpha Launch'
        assert 'id' not in data['tasks'][0]
        assert memory.lists['tasks'] == data['tasks']
        assert memory.params['dueBefore'].endswith('23:59:59+00:00')

    def test_tasks_with_explicit_date(self):
        Task.objects.create(title='In range', deadline=datetime(2030, 1, 10, 9, tzinfo=dt_timezone.utc))
        Task.objects.create(title='End of day', deadline=datetime(2030, 1, 15, 22, tzinfo=dt_timezone.utc))
        Task.objects.create(title='Too late', deadline=datetime(2030, 1, 16, 1, tzinfo=dt_timezone.utc))

        data, memory = run_tool(tools.chat_tasks, {'dueBefore': '2030-01-15'})

        assert [t['title'] for t in data['tasks']] == ['In range', 'End of day']
        assert memory.params['dueBefore'] == '2030-01-15T23:59:59+00:00'

    def test_unparseable_due_date_is_ignored(self):
        Task.objects.create(title='No deadline')
        Task.objects.create(title='Done', status='done')

        data, _ = run_tool(tools.chat_tasks, {'dueBefore': 'next blue moon'})

        assert [t['title'] for t in data['tasks']] == ['No deadline']

    def test_explicit_status(self):
        now = timezone.now()
        Task.objects.create(title='Shipped', deadline=now, status='done')
        Task.objects.create(title='Open', deadline=now)

        data, _ = run_tool(tools.chat_tasks, {'status': 'done'})

        assert [t['title'] for t in data['tasks']] == ['Shipped']

    def test_overdue(self):
        now = timezone.now()
        Task.objects.create(title='Late', deadline=now - timedelta(days=1))
        Task.objects.create(title='Late but done', deadline=now - timedelta(days=1), status='done')
        Task.objects.create(title='Upcoming', deadline=now + timedelta(days=1))

        data, memory = run_tool(tools.chat_overdue)

        assert [t['title'] for t in data['tasks']] == ['Late']
        assert 'now' in memory.params

    def test_tasks_by_project(self, alpha, beta):
        Task.objects.create(title='Alpha open', project=alpha)
        Task.objects.create(title='Alpha done', project=alpha, status='done')
        Task.objects.create(title='Beta open', project=beta)

        data, _ = run_tool(tools.chat_tasks_by_project, {'projectId': str(alpha.id)})

        assert [t['title'] for t in data['tasks']] == ['Alpha open']

    def test_tasks_by_project_rejects_bad_id(self):
        with pytest.raises(ToolInputError):
            run_tool(tools.chat_tasks_by_project, {'projectId': 'Alpha Launch'})

    def test_tasks_filter(self):
        Task.objects.create(title='Tagged', is_important=True, tags=['Finance', 'q3'])
        Task.objects.create(title='Untagged', is_important=True)
        Task.objects.create(title='Not important', tags=['finance'])

        data, _ = run_tool(tools.chat_tasks_filter, {'tag': 'finance', 'important': 'true'})

        assert [t['title'] for t in data['tasks']] == ['Tagged']
        assert data['tasks'][0]['tags'] == ['Finance', 'q3']


@pytest.mark.django_db
class TestLargeResults:
    """Totals and tag matches when more rows match than are returned."""

    def test_tag_match_beyond_row_cap(self):
        Task.objects.bulk_create([Task(title=f'task {i:03d}') for i in range(tools.MAX_LIST_ROWS)])
        Task.objects.create(title='zzz tagged', tags=['billing'])

        data, memory = run_tool(tools.chat_tasks_filter, {'tag': 'billing'})

        assert data['total'] == 1
        assert [t['title'] for t in data['tasks']] == ['zzz tagged']
        assert 'truncated' not in data
        assert memory.lists['tasks'] == data['tasks']

    def test_tag_total_counts_every_match(self):
        Task.objects.bulk_create([
            Task(title=f'task {i:03d}', tags=['billing']) for i in range(tools.MAX_LIST_ROWS + 5)
        ])

        data, _ = run_tool(tools.chat_tasks_filter, {'tag': 'billing'})

        assert data['total'] == tools.MAX_LIST_ROWS + 5
        assert len(data['tasks']) == tools.MAX_LIST_ROWS
        assert data['truncated'] is True

    def test_total_is_not_capped(self):
        Task.objects.bulk_create([Task(title=f'task {i:03d}') for i in range(250)])

        data, _ = run_tool(tools.chat_tasks_filter)

        assert data['total'] == 250
        assert len(data['tasks']) == tools.MAX_LIST_ROWS
        assert data['truncated'] is True

    def test_list_tool_total_is_not_capped(self):
        Team.objects.bulk_create([Team(name=f'Team {i:03d}') for i in range(tools.MAX_LIST_ROWS + 1)])

        data, _ = run_tool(tools.chat_teams_list)

        assert data['total'] == tools.MAX_LIST_ROWS + 1
        assert len(data['teams']) == tools.MAX_LIST_ROWS
        assert data['truncated'] is True


# ============================================================================
# Project tools
# ============================================================================

@pytest.mark.django_db
class TestProjectTools:
    """Project listing and lookup by name."""

    def test_projects_list(self, alpha, beta):
        data, memory = run_tool(tools.chat_projects_list)

        assert [p['name'] for p in data['projects']] == ['Alpha Launch', 'Beta']
        assert data['projects'][0] == {'name': 'Alpha Launch', 'description': 'Q3 release', 'status': 'active'}
        assert len(memory.lists['projects']) == 2

    def test_project_by_name_is_case_insensitive(self, alpha):
        data, memory = run_tool(tools.chat_project_by_name, {'name': 'alpha launch'})

        assert data == {'project': {'name': 'Alpha Launch', 'description': 'Q3 release', 'status': 'active'}}
        assert memory.ids['projectId'] == str(alpha.id)
        assert memory.entities['project']['name'] == 'Alpha Launch'

    def test_project_by_partial_name(self, alpha):
        _, memory = run_tool(tools.chat_project_by_name, {'name': 'alpha'})

        assert memory.ids['projectId'] == str(alpha.id)

    def test_project_by_name_not_found(self, alpha):
        data, memory = run_tool(tools.chat_project_by_name, {'name': 'Gamma'})

        assert data == {'project': None}
        assert 'projectId' not in memory.ids

    def test_project_by_name_requires_name(self):
        with pytest.raises(ToolInputError):
            run_tool(tools.chat_project_by_name, {'name': '  '})


# ============================================================================
# Notes, links, files, people, alarms
# ============================================================================

@pytest.mark.django_db
class TestProjectContentTools:
    """Per-project content and the standalone lists."""

    def test_notes_by_project(self, alpha):
        Note.objects.create(project=alpha, title='Kickoff', content='Agenda')

        data, memory = run_tool(tools.chat_notes_by_project, {'projectId': str(alpha.id)})

        assert data['total'] == 1
        assert data['notes'][0]['title'] == 'Kickoff'
        assert memory.lists['notes'][0]['content'] == 'Agenda'

    def test_single_note_session_is_remembered(self, alpha):
        session = NoteSession.objects.create(project=alpha, name='Standup', ai_summary='Short one')

        data, memory = run_tool(tools.chat_note_sessions_by_project, {'projectId': str(alpha.id)})

        assert data['sessions'][0]['name'] == 'Standup'
        assert memory.ids['sessionId'] == str(session.id)
        assert memory.entities['session']['name'] == 'Standup'

    def test_several_note_sessions_are_not_bound(self, alpha):
        NoteSession.objects.create(project=alpha, name='Standup')
        NoteSession.objects.create(project=alpha, name='Retro')

        data, memory = run_tool(tools.chat_note_sessions_by_project, {'projectId': str(alpha.id)})

        assert data['total'] == 2
        assert 'sessionId' not in memory.ids

    def test_note_lines_by_session(self, alpha):
        session = NoteSession.objects.create(project=alpha, name='Standup')
        NoteLine.objects.create(session=session, content='Ship on Friday')

        data, memory = run_tool(tools.chat_note_lines_by_session, {'sessionId': str(session.id)})

        assert [line['content'] for line in data['lines']] == ['Ship on Friday']
        assert memory.lists['noteLines'] == data['lines']

    def test_links_and_files_by_project(self, alpha):
        Link.objects.create(project=alpha, name='Spec', url='https://example.com/spec')
        FileDoc.objects.create(project=alpha, name='plan.pdf', mime_type='application/pdf', size_bytes=2048)

        links, _ = run_tool(tools.chat_links_by_project, {'projectId': str(alpha.id)})
        files, _ = run_tool(tools.chat_files_by_project, {'projectId': str(alpha.id)})

        assert links['links'] == [{'name': 'Spec', 'url': 'https://example.com/spec'}]
        assert files['files'] == [{'name': 'plan.pdf', 'mimeType': 'application/pdf', 'sizeBytes': 2048}]

    def test_people_and_teams(self):
        core = Team.objects.create(name='Core')
        other = Team.objects.create(name='Design')
        Person.objects.create(name='Ada', team=core, role='Engineer', email='ada@example.com')
        Person.objects.create(name='Bo', team=other)

        teams, _ = run_tool(tools.chat_teams_list)
        people, _ = run_tool(tools.chat_people_list, {'teamId': str(core.id)})

        assert [t['name'] for t in teams['teams']] == ['Core', 'Design']
        assert people['people'] == [
            {'name': 'Ada', 'email': 'ada@example.com', 'role': 'Engineer', 'team': 'Core'},
        ]

    def test_alarms_filtered_by_enabled_flag(self):
        Alarm.objects.create(title='Standup', enabled=True)
        Alarm.objects.create(title='Old', enabled=False)

        data, memory = run_tool(tools.chat_alarms_list, {'enabled': 'false'})
        everything, _ = run_tool(tools.chat_alarms_list)

        assert [a['title'] for a in data['alarms']] == ['Old']
        assert everything['total'] == 2


# ============================================================================
# Collection query
# ============================================================================

@pytest.mark.django_db
class TestCollectionQuery:
    """The where/select/sort mini-DSL."""

    def test_where_sort_and_select(self, alpha):
        Task.objects.create(title='B', status='todo', deadline=datetime(2030, 1, 2, tzinfo=dt_timezone.utc))
        Task.objects.create(title='A', status='doing', deadline=datetime(2030, 1, 1, tzinfo=dt_timezone.utc))
        Task.objects.create(title='C', status='done', deadline=datetime(2030, 1, 3, tzinfo=dt_timezone.utc))

        data, memory = run_tool(tools.chat_collection_query, {
            'collection': 'tasks',
            'where': {'status': {'ne': 'done'}},
            'sort': {'deadline': -1},
            'select': ['title', 'deadline', 'projectId', 'secret'],
        })

        assert data['items'] == [
            {'title': 'B', 'deadline': '2030-01-02T00:00:00+00:00'},
            {'title': 'A', 'deadline': '2030-01-01T00:00:00+00:00'},
        ]
        assert memory.lists['tasks'] == data['items']

    def test_or_and_in(self):
        Task.objects.create(title='Urgent', is_urgent=True, status='done')
        Task.objects.create(title='Doing', status='doing')
        Task.objects.create(title='Todo', status='todo')

        data, _ = run_tool(tools.chat_collection_query, {
            'collection': 'tasks',
            'where': {'or': [{'isUrgent': True}, {'status': {'in': ['doing']}}]},
            'sort': {'title': 1},
            'select': ['title'],
        })

        assert data['items'] == [{'title': 'Doing'}, {'title': 'Urgent'}]

    def test_non_allowlisted_fields_are_ignored(self, alpha):
        data, _ = run_tool(tools.chat_collection_query, {
            'collection': 'projects',
            'where': {'password': 'x'},
        })

        assert data['total'] == 1

    def test_alarm_when_field(self):
        Alarm.objects.create(title='Soon', next_trigger_at=datetime(2030, 1, 1, tzinfo=dt_timezone.utc))
        Alarm.objects.create(title='Later', next_trigger_at=datetime(2031, 1, 1, tzinfo=dt_timezone.utc))

        data, memory = run_tool(tools.chat_collection_query, {
            'collection': 'alarms',
            'where': {'when': {'lt': '2030-06-01T00:00:00+00:00'}},
        })

        assert [a['title'] for a in data['items']] == ['Soon']
        assert memory.lists['alarms'] == data['items']

    def test_limit_is_applied(self):
        for i in range(5):
            Team.objects.create(name=f'Team {i}')

        data, _ = run_tool(tools.chat_collection_query, {'collection': 'teams', 'limit': 2})

        assert len(data['items']) == 2
        assert data['total'] == 5
        assert data['truncated'] is True

    def test_unsupported_collection(self):
        with pytest.raises(ToolInputError):
            run_tool(tools.chat_collection_query, {'collection': 'users'})

    def test_invalid_filter_value(self):
        with pytest.raises(ToolInputError):
            run_tool(tools.chat_collection_query, {
                'collection': 'tasks',
                'where': {'deadline': {'lt': 'whenever'}},
            })


# ============================================================================
# Semantic search
# ============================================================================

class TestSemanticSearch:
    """Vector search, disabled and enabled."""

    def test_disabled_returns_empty_results(self):
        data, memory = run_tool(tools.chat_semantic_search, {'query': 'launch plan'})

        assert data == {'results': [], 'total': 0, 'disabled': True}
        assert memory.lists['searchResults'] == []

    @pytest.mark.django_db
    def test_hits_are_enriched_with_titles(self, settings, alpha):
        settings.QDRANT_URL = 'http://qdrant:6333'
        note = Note.objects.create(project=alpha, title='Launch checklist')
        link = Link.objects.create(project=alpha, name='', url='https://example.com/launch')
        hits = [
            VectorHit(kind='note', doc_id=f'note:{note.id}', score=0.91),
            VectorHit(kind='link', doc_id=str(link.id), score=0.55),
            VectorHit(kind='task', doc_id=str(uuid.uuid4()), score=0.2),
        ]

        with patch('apps.assistant.vector_index.search_workspace', new=AsyncMock(return_value=hits)) as search:
            data, memory = run_tool(tools.chat_semantic_search, {'query': 'launch', 'limit': 100})

        search.assert_awaited_once_with('launch', limit=tools.SEARCH_MAX_LIMIT)
        assert data['results'] == [
            {'kind': 'note', 'id': str(note.id), 'title': 'Launch checklist', 'url': None, 'score': 0.91},
            {'kind': 'link', 'id': str(link.id), 'title': 'https://example.com/launch',
             'url': 'https://example.com/launch', 'score': 0.55},
            {'kind': 'task', 'id': hits[2].doc_id, 'title': '(task)', 'url': None, 'score': 0.2},
        ]
        assert memory.lists['searchResults'] == data['results']

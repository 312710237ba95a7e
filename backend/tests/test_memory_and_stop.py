"""
Tests for working memory paths and stop-condition evaluation.
"""
import pytest

from apps.assistant.memory import WorkingMemory
from apps.assistant.stop_conditions import is_artifact_satisfied, should_stop


# ============================================================================
# Working memory
# ============================================================================

class TestWorkingMemory:
    """Tests for dot-path access and snapshots."""

    def test_get_path_reads_nested_values(self):
        memory = WorkingMemory()
        memory.ids['projectId'] = 'p-1'
        memory.entities['project'] = {'name': 'Alpha'}

        assert memory.get_path('ids.projectId') == 'p-1'
        assert memory.get_path('entities.project.name') == 'Alpha'

    def test_get_path_accepts_memory_prefix(self):
        memory = WorkingMemory(ids={'sessionId': 's-1'})

        assert memory.get_path('memory.ids.sessionId') == 's-1'

    def test_get_path_missing_segments_return_none(self):
        memory = WorkingMemory()

        assert memory.get_path('ids.projectId') is None
        assert memory.get_path('entities.project.name') is None
        assert memory.get_path('') is None

    def test_get_path_rejects_unknown_sections(self):
        memory = WorkingMemory()

        assert memory.get_path('snapshot') is None
        assert memory.get_path('__class__.__name__') is None

    def test_get_path_indexes_lists(self):
        memory = WorkingMemory(lists={'tasks': [{'title': 'A'}, {'title': 'B'}]})

        assert memory.get_path('lists.tasks.1.title') == 'B'
        assert memory.get_path('lists.tasks.5.title') is None

    def test_record_error_tracks_last_error(self):
        memory = WorkingMemory()
        assert memory.last_error is None

        memory.record_error('chat_tasks', 'boom')
        memory.record_error('chat_overdue', 'timeout')

        assert memory.last_error == {'tool': 'chat_overdue', 'message': 'timeout'}

    def test_snapshot_reports_list_sizes(self):
        memory = WorkingMemory(
            ids={'projectId': 'p-1'},
            lists={'tasks': [{'title': 'A'}, {'title': 'B'}], 'links': []},
        )

        snapshot = memory.snapshot()

        assert snapshot['ids'] == {'projectId': 'p-1'}
        assert snapshot['lists'] == {'tasks': 2, 'links': 0}
        assert snapshot['lastError'] is None


# ============================================================================
# Stop conditions
# ============================================================================

class TestStopConditions:
    """Tests for artifact matching."""

    def test_empty_stop_list_never_stops(self):
        memory = WorkingMemory(lists={'tasks': [{'title': 'A'}]})

        assert should_stop([], memory) is False
        assert should_stop(None, memory) is False

    def test_named_list_must_be_non_empty(self):
        memory = WorkingMemory(lists={'tasks': []})
        assert should_stop(['lists.tasks'], memory) is False

        memory.lists['tasks'] = [{'title': 'A'}]
        assert should_stop(['lists.tasks'], memory) is True

    def test_lists_wildcard_needs_any_non_empty_list(self):
        memory = WorkingMemory(lists={'tasks': [], 'links': []})
        assert is_artifact_satisfied('lists.*', memory) is False

        memory.lists['links'] = [{'name': 'Docs'}]
        assert is_artifact_satisfied('lists.*', memory) is True

    def test_id_path_is_checked_for_truthiness(self):
        memory = WorkingMemory()
        assert should_stop(['ids.projectId'], memory) is False

        memory.ids['projectId'] = 'p-1'
        assert should_stop(['ids.projectId'], memory) is True

    def test_section_wildcard(self):
        memory = WorkingMemory(ids={'projectId': None})
        assert is_artifact_satisfied('ids.*', memory) is False

        memory.ids['sessionId'] = 's-1'
        assert is_artifact_satisfied('ids.*', memory) is True

    def test_all_artifacts_must_be_present(self):
        memory = WorkingMemory(ids={'projectId': 'p-1'})

        assert should_stop(['ids.projectId', 'lists.tasks'], memory) is False

        memory.lists['tasks'] = [{'title': 'A'}]
        assert should_stop(['ids.projectId', 'lists.tasks'], memory) is True

    @pytest.mark.parametrize('artifact', ['memory.lists.tasks', ' lists.tasks '])
    def test_artifact_spelling_variants(self, artifact):
        memory = WorkingMemory(lists={'tasks': [{'title': 'A'}]})

        assert is_artifact_satisfied(artifact, memory) is True

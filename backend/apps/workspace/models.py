"""
Workspace data store models.

These are the entities the assistant answers questions about. The assistant
only ever reads them; creating and editing happens elsewhere in the product.
"""
import uuid
from django.db import models


class TimestampedModel(models.Model):
    """Shared primary key and timestamp columns."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class Project(TimestampedModel):
    name = models.CharField(max_length=255, db_index=True)
    description = models.TextField(blank=True, default='')
    status = models.CharField(max_length=50, blank=True, default='')

    class Meta:
        db_table = 'projects'
        ordering = ['name']

    def __str__(self):
        return self.name


class Task(TimestampedModel):
    """A to-do item, optionally attached to a project."""

    class Status(models.TextChoices):
        TODO = 'todo', 'To do'
        DOING = 'doing', 'In progress'
        DONE = 'done', 'Done'

    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tasks',
    )
    title = models.CharField(max_length=500)
    notes = models.TextField(blank=True, default='')
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.TODO,
        db_index=True,
    )
    deadline = models.DateTimeField(null=True, blank=True, db_index=True)
    is_urgent = models.BooleanField(default=False)
    is_important = models.BooleanField(default=False)
    # Free-form labels; stored as a JSON list of strings
    tags = models.JSONField(default=list, blank=True)

    class Meta:
        db_table = 'tasks'
        ordering = ['deadline', 'title']

    def __str__(self):
        return self.title


class Note(TimestampedModel):
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='notes',
    )
    title = models.CharField(max_length=500, blank=True, default='')
    content = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'notes'
        ordering = ['-updated_at']

    def __str__(self):
        return self.title or 'Untitled note'


class NoteSession(TimestampedModel):
    """A live note-taking session made of individual lines."""
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='note_sessions',
    )
    name = models.CharField(max_length=255, blank=True, default='')
    ai_summary = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'note_sessions'
        ordering = ['-created_at']

    def __str__(self):
        return self.name or 'Session'


class NoteLine(TimestampedModel):
    session = models.ForeignKey(
        NoteSession,
        on_delete=models.CASCADE,
        related_name='lines',
    )
    content = models.TextField()

    class Meta:
        db_table = 'note_lines'
        ordering = ['created_at']

    def __str__(self):
        return self.content[:50]


class Link(TimestampedModel):
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='links',
    )
    name = models.CharField(max_length=255, blank=True, default='')
    url = models.URLField(max_length=2000)

    class Meta:
        db_table = 'links'
        ordering = ['name']

    def __str__(self):
        return self.name or self.url


class Team(TimestampedModel):
    name = models.CharField(max_length=255)

    class Meta:
        db_table = 'teams'
        ordering = ['name']

    def __str__(self):
        return self.name


class Person(TimestampedModel):
    team = models.ForeignKey(
        Team,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='members',
    )
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True, default='')
    role = models.CharField(max_length=255, blank=True, default='')

    class Meta:
        db_table = 'people'
        ordering = ['name']

    def __str__(self):
        return self.name


class FileDoc(TimestampedModel):
    """Metadata of a file attached to a project."""
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='files',
    )
    name = models.CharField(max_length=255)
    mime_type = models.CharField(max_length=100, blank=True, default='')
    size_bytes = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'files'
        ordering = ['name']

    def __str__(self):
        return self.name


class Alarm(TimestampedModel):
    title = models.CharField(max_length=255)
    enabled = models.BooleanField(default=True, db_index=True)
    next_trigger_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'alarms'
        ordering = ['next_trigger_at']

    def __str__(self):
        return self.title

# Generated migration for the workspace data store models

from django.db import migrations, models
import django.db.models.deletion
import uuid


def _timestamped(*fields):
    return [
        ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
        ('created_at', models.DateTimeField(auto_now_add=True)),
        ('updated_at', models.DateTimeField(auto_now=True)),
        *fields,
    ]


def _project_fk(related_name):
    return ('project', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name=related_name, to='workspace.project'))


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Project',
            fields=_timestamped(
                ('name', models.CharField(db_index=True, max_length=255)),
                ('description', models.TextField(blank=True, default='')),
                ('status', models.CharField(blank=True, default='', max_length=50)),
            ),
            options={
                'db_table': 'projects',
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Team',
            fields=_timestamped(
                ('name', models.CharField(max_length=255)),
            ),
            options={
                'db_table': 'teams',
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Alarm',
            fields=_timestamped(
                ('title', models.CharField(max_length=255)),
                ('enabled', models.BooleanField(db_index=True, default=True)),
                ('next_trigger_at', models.DateTimeField(blank=True, null=True)),
            ),
            options={
                'db_table': 'alarms',
                'ordering': ['next_trigger_at'],
            },
        ),
        migrations.CreateModel(
            name='Task',
            fields=_timestamped(
                ('title', models.CharField(max_length=500)),
                ('notes', models.TextField(blank=True, default='')),
                ('status', models.CharField(choices=[('todo', 'To do'), ('doing', 'In progress'), ('done', 'Done')], db_index=True, default='todo', max_length=20)),
                ('deadline', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('is_urgent', models.BooleanField(default=False)),
                ('is_important', models.BooleanField(default=False)),
                ('tags', models.JSONField(blank=True, default=list)),
                _project_fk('tasks'),
            ),
            options={
                'db_table': 'tasks',
                'ordering': ['deadline', 'title'],
            },
        ),
        migrations.CreateModel(
            name='Note',
            fields=_timestamped(
                ('title', models.CharField(blank=True, default='', max_length=500)),
                ('content', models.TextField(blank=True, default='')),
                _project_fk('notes'),
            ),
            options={
                'db_table': 'notes',
                'ordering': ['-updated_at'],
            },
        ),
        migrations.CreateModel(
            name='NoteSession',
            fields=_timestamped(
                ('name', models.CharField(blank=True, default='', max_length=255)),
                ('ai_summary', models.TextField(blank=True, default='')),
                _project_fk('note_sessions'),
            ),
            options={
                'db_table': 'note_sessions',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='NoteLine',
            fields=_timestamped(
                ('content', models.TextField()),
                ('session', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='lines', to='workspace.notesession')),
            ),
            options={
                'db_table': 'note_lines',
                'ordering': ['created_at'],
            },
        ),
        migrations.CreateModel(
            name='Link',
            fields=_timestamped(
                ('name', models.CharField(blank=True, default='', max_length=255)),
                ('url', models.URLField(max_length=2000)),
                _project_fk('links'),
            ),
            options={
                'db_table': 'links',
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Person',
            fields=_timestamped(
                ('name', models.CharField(max_length=255)),
                ('email', models.EmailField(blank=True, default='', max_length=254)),
                ('role', models.CharField(blank=True, default='', max_length=255)),
                ('team', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='members', to='workspace.team')),
            ),
            options={
                'db_table': 'people',
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='FileDoc',
            fields=_timestamped(
                ('name', models.CharField(max_length=255)),
                ('mime_type', models.CharField(blank=True, default='', max_length=100)),
                ('size_bytes', models.PositiveIntegerField(default=0)),
                _project_fk('files'),
            ),
            options={
                'db_table': 'files',
                'ordering': ['name'],
            },
        ),
    ]

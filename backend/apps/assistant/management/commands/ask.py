"""
Django management command to ask the workspace assistant a question.

Usage:
    python manage.py ask "Which tasks are overdue?"
    python manage.py ask "What is left on Website Redesign?" --trace
"""
import asyncio
import json

from django.core.management.base import BaseCommand, CommandError

from apps.assistant.llm_client import LLMConfigError
from apps.assistant.orchestrator import AssistantError, ask


class Command(BaseCommand):
    help = 'Ask the workspace assistant a question'

    def add_arguments(self, parser):
        parser.add_argument('query', help='The question to answer')
        parser.add_argument(
            '--trace',
            action='store_true',
            help='Print the execution trace after the answer',
        )

    def handle(self, *args, **options):
        try:
            result = asyncio.run(ask(options['query']))
        except (AssistantError, LLMConfigError) as e:
            raise CommandError(str(e))

        self.stdout.write(result.text)

        if result.citations:
            self.stdout.write('')
            self.stdout.write(self.style.SUCCESS('Citations:'))
            for citation in result.citations:
                self.stdout.write(f"  [{citation.kind}] {citation.title}")

        if options['trace']:
            self.stdout.write('')
            self.stdout.write(json.dumps([t.to_dict() for t in result.trace], indent=2))

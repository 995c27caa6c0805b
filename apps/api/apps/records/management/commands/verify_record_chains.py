"""
Management command to verify version chains.

Usage:
    python manage.py verify_record_chains
    python manage.py verify_record_chains --record <uuid> --fail-on-error

For every record checks that:
- version numbers are exactly 1..k with no gap or duplicate
- current_version points at one of the record's own versions
- current_version_number equals k and the pointed version's number
- every stored content hash matches its content
"""
from django.core.management.base import BaseCommand, CommandError

from apps.records.models import MedicalRecord, RecordVersion


def find_chain_problems(record):
    """Return a list of human-readable problems for one record."""
    problems = []
    versions = list(
        RecordVersion.objects.filter(record=record)
        .order_by('version_number')
        .only('id', 'record_id', 'version_number', 'content', 'content_hash')
    )
    numbers = [v.version_number for v in versions]

    if not versions:
        problems.append('record has no versions')
        return problems

    if numbers != list(range(1, len(numbers) + 1)):
        problems.append(f'version numbers are not contiguous from 1: {numbers}')

    top = numbers[-1]
    if record.current_version_number != top:
        problems.append(
            f'current_version_number is {record.current_version_number}, latest version is {top}'
        )

    version_ids = {v.id: v.version_number for v in versions}
    if record.current_version_id not in version_ids:
        problems.append('current_version does not belong to this record')
    elif version_ids[record.current_version_id] != record.current_version_number:
        problems.append(
            f'current_version points at v{version_ids[record.current_version_id]}, '
            f'counter says v{record.current_version_number}'
        )

    for version in versions:
        if not version.verify_integrity():
            problems.append(f'content hash mismatch on v{version.version_number}')

    return problems


class Command(BaseCommand):
    help = 'Verify that every record has a gap-free version chain with a valid pointer and hashes'

    def add_arguments(self, parser):
        parser.add_argument(
            '--record',
            dest='record_id',
            default=None,
            help='Only verify this record id'
        )
        parser.add_argument(
            '--fail-on-error',
            action='store_true',
            help='Exit with an error when any problem is found'
        )

    def handle(self, *args, **options):
        records = MedicalRecord.objects.all().order_by('created_at')
        if options['record_id']:
            records = records.filter(pk=options['record_id'])

        checked = 0
        broken = 0
        for record in records.iterator():
            checked += 1
            problems = find_chain_problems(record)
            if problems:
                broken += 1
                for problem in problems:
                    self.stdout.write(self.style.ERROR(f'✗ {record.id}: {problem}'))

        if broken:
            message = f'{broken} of {checked} record(s) have chain problems'
            if options['fail_on_error']:
                raise CommandError(message)
            self.stdout.write(self.style.WARNING(message))
        else:
            self.stdout.write(self.style.SUCCESS(f'✓ {checked} record(s) verified'))

# Reconcile Matches Management Command
from django.core.management.base import BaseCommand

from marketplace.coordinator import coordinator


class Command(BaseCommand):
    help = (
        'Finds matches whose commit did not fully land (missing conversation, '
        'pending match, stale package or trip status) and moves them forward.'
    )

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='List unfinished matches without repairing them.',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']

        self.stdout.write('Scanning matches...')
        reports = coordinator.reconcile_all(dry_run=dry_run)

        failed = 0
        for report in reports:
            problems = ', '.join(report.problems)
            if dry_run:
                self.stdout.write(f'  [DRY-RUN] Match {report.match_id}: {problems}')
            elif report.error:
                failed += 1
                self.stdout.write(self.style.ERROR(
                    f'  Match {report.match_id}: {problems} (not repaired: {report.error})'
                ))
            else:
                self.stdout.write(f'  Match {report.match_id}: repaired {problems}')

        self.stdout.write(f'Found {len(reports)} unfinished matches.')

        if dry_run:
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
        elif failed:
            self.stdout.write(self.style.WARNING(
                f'Reconciliation finished with {failed} matches still unfinished.'
            ))
        else:
            self.stdout.write(self.style.SUCCESS('Reconciliation completed successfully.'))

# Recalculate Ratings Management Command
from django.core.management.base import BaseCommand, CommandError
from django.db.models import Avg, Count

from marketplace.exceptions import TransientStoreError
from marketplace.models import Review, User
from marketplace.ratings import recalculate_user_rating


class Command(BaseCommand):
    help = 'Recalculates user ratings from their reviews to repair drifted aggregates.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report drifted ratings without saving changes.',
        )
        parser.add_argument(
            '--uid',
            help='Recalculate a single user only.',
        )
        parser.add_argument(
            '--batch-size',
            type=int,
            default=1000,
            help='Chunk size used when iterating over users.',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        batch_size = options['batch_size']

        if batch_size < 1:
            raise CommandError('--batch-size must be at least 1.')

        users = User.objects.all()
        if options['uid']:
            users = users.filter(uid=options['uid'])
            if not users.exists():
                raise CommandError(f'No user with uid {options["uid"]}.')

        self.stdout.write('Recalculating user ratings...')
        count = 0
        drifted = 0

        for user in users.order_by('pk').iterator(chunk_size=batch_size):
            stats = Review.objects.filter(subject_id=user.uid).aggregate(
                avg_rating=Avg('rating'),
                total=Count('id')
            )
            new_avg = float(stats['avg_rating'] or 0.0)
            new_total = stats['total'] or 0
            unapplied = Review.objects.filter(subject_id=user.uid, applied=False).exists()

            if abs(user.rating - new_avg) > 0.001 or user.review_count != new_total or unapplied:
                drifted += 1
                if dry_run:
                    self.stdout.write(
                        f'  [DRY-RUN] User {user.uid}: Rating {user.rating:.2f} -> {new_avg:.2f}, '
                        f'Count {user.review_count} -> {new_total}'
                    )
                else:
                    try:
                        recalculate_user_rating(user.uid)
                    except TransientStoreError as e:
                        raise CommandError(f'Store unavailable while updating {user.uid}: {e}')

            count += 1
            if count % 100 == 0:
                self.stdout.write(f'Processed {count} users...')

        self.stdout.write(f'Processed {count} users total, {drifted} out of date.')

        if dry_run:
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
        else:
            self.stdout.write(self.style.SUCCESS('Recalculation completed successfully.'))

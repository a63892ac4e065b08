"""Cancel orders whose M-Pesa prompt was never answered.

Run periodically (e.g. from cron every few minutes)::

    python manage.py expire_payment_attempts --minutes 10
"""

from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from payments.services import expire_stale_attempts


class Command(BaseCommand):
    help = 'Fail pending payment attempts older than the timeout and cancel their orders.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--minutes',
            type=int,
            default=settings.PAYMENT_ATTEMPT_TIMEOUT_MINUTES,
            help='Age in minutes after which a pending attempt is expired.',
        )

    def handle(self, *args, **options):
        minutes = options['minutes']
        if minutes < 1:
            raise CommandError('--minutes must be at least 1.')

        expired = expire_stale_attempts(timedelta(minutes=minutes))
        self.stdout.write(self.style.SUCCESS(f'Expired {expired} payment attempt(s).'))

"""Grant period allocations to subscriptions whose period has ended."""

from django.core.management.base import BaseCommand, CommandError

from billing.services.rollover import manual_rollover, run_rollover_tick
from billing.services.token_ledger import SubscriptionNotFound


class Command(BaseCommand):

    help = 'Run the token period rollover for all due subscriptions or a single tenant'

    def add_arguments(self, parser):
        parser.add_argument('--tenant', help='Tenant UUID to roll over on its own')
        parser.add_argument('--batch-size', type=int, default=None, help='Maximum subscriptions per run')

    def handle(self, *args, **options):
        tenant_id = options.get('tenant')
        if tenant_id:
            try:
                result = manual_rollover(tenant_id, actor='manage.py')
            except SubscriptionNotFound as exc:
                raise CommandError(str(exc)) from exc

            if result is None:
                self.stdout.write(self.style.WARNING(f'Tenant {tenant_id} is not due for rollover.'))
            elif result.retired:
                self.stdout.write(self.style.SUCCESS(f'Retired subscription for tenant {tenant_id}.'))
            else:
                self.stdout.write(
                    self.style.SUCCESS(
                        f'Granted {result.allocation} tokens to tenant {tenant_id}; '
                        f'next period ends {result.subscription.current_period_end:%Y-%m-%d %H:%M}.'
                    )
                )
            return

        stats = run_rollover_tick(batch_size=options.get('batch_size'))
        self.stdout.write(
            self.style.SUCCESS(
                'Rollover finished: processed={processed} rolled_over={rolled_over} '
                'retired={retired} skipped={skipped} failed={failed}'.format(**stats)
            )
        )

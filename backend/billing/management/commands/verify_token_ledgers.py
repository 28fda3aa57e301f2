"""Replay token ledgers and compare them with the stored balances."""

from django.core.management.base import BaseCommand, CommandError

from billing.models import TenantSubscription
from billing.services.token_ledger import LedgerReplayMismatch, unfreeze_ledger, verify_ledger


class Command(BaseCommand):

    help = 'Verify that every token balance equals the fold of its transaction ledger'

    def add_arguments(self, parser):
        parser.add_argument('--tenant', help='Only verify this tenant UUID')
        parser.add_argument(
            '--no-freeze',
            action='store_true',
            help='Report mismatches without halting debits',
        )
        parser.add_argument(
            '--unfreeze',
            action='store_true',
            help='Resume debits for the tenant once its ledger replays cleanly (requires --tenant)',
        )

    def handle(self, *args, **options):
        tenant_id = options.get('tenant')
        subscriptions = TenantSubscription.objects.select_related('tenant').order_by('created_at')
        if tenant_id:
            subscriptions = subscriptions.filter(tenant_id=tenant_id)
            if not subscriptions.exists():
                raise CommandError(f'Tenant {tenant_id} has no token subscription.')

        if options['unfreeze']:
            if not tenant_id:
                raise CommandError('--unfreeze requires --tenant.')
            subscription = subscriptions.get()
            try:
                replay = unfreeze_ledger(subscription.pk, actor='manage.py')
            except LedgerReplayMismatch as exc:
                raise CommandError(f'Ledger still mismatches; refusing to resume debits: {exc}') from exc
            self.stdout.write(
                self.style.SUCCESS(f'Debits resumed for {subscription.tenant} (balance {replay.stored_balance}).')
            )
            return

        freeze = not options['no_freeze']
        mismatched = 0
        for subscription in subscriptions:
            try:
                replay = verify_ledger(subscription, freeze=freeze, actor='manage.py')
            except LedgerReplayMismatch as exc:
                mismatched += 1
                self.stdout.write(self.style.ERROR(f'✗ {subscription.tenant}: {exc}'))
                continue
            self.stdout.write(
                f'✓ {subscription.tenant}: {replay.transaction_count} transactions, balance {replay.stored_balance}'
            )

        self.stdout.write('\n' + '=' * 50)
        summary = f'Verified {subscriptions.count()} ledger(s); {mismatched} mismatched.'
        self.stdout.write(self.style.ERROR(summary) if mismatched else self.style.SUCCESS(summary))

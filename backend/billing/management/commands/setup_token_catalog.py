"""
Create the default subscription plans and action prices.

Plans: Professional, Advanced, Enterprise and Ultimate.
Actions: transcription, proposal, email, CRM, export and analytics operations.
"""

from django.core.management.base import BaseCommand

from billing.apps import ensure_default_token_catalog
from billing.models import SubscriptionPlan, TokenPricing


class Command(BaseCommand):

    help = 'Create default subscription plans and token pricing'

    def add_arguments(self, parser):
        parser.add_argument(
            '--update',
            action='store_true',
            help='Refresh plan descriptions and publish changed action costs as new versions'
        )

    def handle(self, *args, **options):
        update_existing = options['update']
        result = ensure_default_token_catalog(force=True, update=update_existing)

        for name in result['created']:
            self.stdout.write(self.style.SUCCESS(f'✓ Created {name}'))
        for name in result['updated']:
            self.stdout.write(self.style.SUCCESS(f'✓ Updated {name}'))

        self.stdout.write('\n' + '=' * 50)
        self.stdout.write('Token catalog setup completed:')
        self.stdout.write(f'  • Created: {len(result["created"])} entr(ies)')
        if update_existing:
            self.stdout.write(f'  • Updated: {len(result["updated"])} entr(ies)')

        self.stdout.write('\nCurrent plans:')
        for plan in SubscriptionPlan.objects.filter(is_active=True):
            self.stdout.write(
                f"  • {plan.display_name}: ${plan.monthly_price}/month, "
                f"{plan.monthly_tokens} tokens, overage ${plan.overage_token_cost}/token"
            )

        self.stdout.write('\nActive action prices:')
        for pricing in TokenPricing.objects.filter(is_active=True).order_by('category', 'action_type'):
            self.stdout.write(f"  • [{pricing.category}] {pricing.action_type}: {pricing.token_cost} tokens")

        if not update_existing and not result['created']:
            self.stdout.write(
                self.style.WARNING('\nNote: The catalog already exists. Use --update to refresh it.')
            )

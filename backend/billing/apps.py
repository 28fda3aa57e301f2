import logging
from decimal import Decimal
from typing import Dict, List

from django.apps import AppConfig
from django.db.models.signals import post_migrate

logger = logging.getLogger(__name__)

_CATALOG_INITIALISED = False

DEFAULT_PLANS = (
    {
        "name": "professional",
        "display_name": "Professional",
        "description": "For solo consultants and small agencies",
        "monthly_price": Decimal("550.00"),
        "annual_price": Decimal("5500.00"),
        "monthly_tokens": 35000,
        "annual_tokens": 42000,
        "overage_token_cost": Decimal("0.009"),
        "sort_order": 1,
    },
    {
        "name": "advanced",
        "display_name": "Advanced",
        "description": "For growing agencies with several active clients",
        "monthly_price": Decimal("1500.00"),
        "annual_price": Decimal("15000.00"),
        "monthly_tokens": 100000,
        "annual_tokens": 120000,
        "overage_token_cost": Decimal("0.008"),
        "sort_order": 2,
    },
    {
        "name": "enterprise",
        "display_name": "Enterprise",
        "description": "For established agencies running high volumes",
        "monthly_price": Decimal("2500.00"),
        "annual_price": Decimal("25000.00"),
        "monthly_tokens": 200000,
        "annual_tokens": 240000,
        "overage_token_cost": Decimal("0.007"),
        "sort_order": 3,
    },
    {
        "name": "ultimate",
        "display_name": "Ultimate",
        "description": "For agency networks with dedicated support",
        "monthly_price": Decimal("4000.00"),
        "annual_price": Decimal("40000.00"),
        "monthly_tokens": 750000,
        "annual_tokens": 900000,
        "overage_token_cost": Decimal("0.006"),
        "sort_order": 4,
    },
)

# (action_type, category, display_name, token_cost)
DEFAULT_PRICING = (
    ("transcription_upload_30min", "transcription", "Upload & transcribe meeting (30 min)", 70),
    ("transcription_upload_60min", "transcription", "Upload & transcribe meeting (60 min)", 140),
    ("extract_key_moments", "transcription", "Extract key moments", 35),
    ("generate_meeting_summary", "transcription", "Generate meeting summary", 21),
    ("proposal_generation", "proposal", "Generate proposal from transcription", 53),
    ("proposal_regenerate_section", "proposal", "Regenerate specific section", 14),
    ("proposal_ai_enhance", "proposal", "AI-enhance existing proposal", 21),
    ("email_send_single", "email", "Send 1 email", 2),
    ("email_send_bulk_100", "email", "Send 100 emails", 140),
    ("email_send_bulk_1000", "email", "Send 1,000 emails", 1120),
    ("email_generate_copy", "email", "AI-generate email copy", 42),
    ("client_create", "crm", "Create client record", 2),
    ("client_update", "crm", "Update client record", 1),
    ("client_sync_hubspot", "crm", "Sync to HubSpot", 5),
    ("client_generate_insights", "crm", "Generate client insights", 28),
    ("export_pdf", "export", "Export proposal to PDF", 10),
    ("export_docusign", "export", "Send to DocuSign", 15),
    ("export_google_docs", "export", "Export to Google Docs", 5),
    ("analytics_dashboard", "analytics", "Generate dashboard", 5),
    ("analytics_custom_report", "analytics", "Custom report generation", 15),
    ("analytics_ai_insights", "analytics", "AI insights & recommendations", 35),
)

PLAN_DESCRIPTIVE_FIELDS = ("display_name", "description", "sort_order")


def ensure_default_token_catalog(*, force: bool = False, update: bool = False) -> Dict[str, List[str]]:
    """Ensure the default subscription plans and action prices exist.

    Plan terms are immutable, so ``update`` only refreshes descriptive plan
    fields; a changed action cost is published as a new pricing version.
    """
    global _CATALOG_INITIALISED
    empty = {"created": [], "updated": []}
    if _CATALOG_INITIALISED and not force:
        return empty

    from django.db import OperationalError, ProgrammingError, transaction

    from .models import SubscriptionPlan, TokenPricing
    from .services.pricing_catalog import publish_price

    created, updated = [], []

    try:
        with transaction.atomic():
            for plan_data in DEFAULT_PLANS:
                defaults = {key: value for key, value in plan_data.items() if key != "name"}
                plan, was_created = SubscriptionPlan.objects.get_or_create(name=plan_data["name"], defaults=defaults)
                if was_created:
                    created.append(f"plan:{plan.name}")
                    continue
                if not update:
                    continue

                fields_to_update = []
                for field in PLAN_DESCRIPTIVE_FIELDS:
                    if getattr(plan, field) != plan_data[field]:
                        setattr(plan, field, plan_data[field])
                        fields_to_update.append(field)
                if fields_to_update:
                    plan.save(update_fields=fields_to_update + ["updated_at"])
                    updated.append(f"plan:{plan.name}")

            for action_type, category, display_name, token_cost in DEFAULT_PRICING:
                current = TokenPricing.objects.filter(action_type=action_type, is_active=True).first()
                if current is None:
                    if TokenPricing.objects.filter(action_type=action_type).exists():
                        # Retired deliberately; leave it unpriced.
                        continue
                    TokenPricing.objects.create(
                        action_type=action_type,
                        category=category,
                        display_name=display_name,
                        token_cost=token_cost,
                    )
                    created.append(f"pricing:{action_type}")
                elif update and current.token_cost != token_cost:
                    publish_price(action_type, token_cost, display_name=display_name, category=category)
                    updated.append(f"pricing:{action_type}")

    except (OperationalError, ProgrammingError):
        logger.debug("Database not ready for token catalog initialisation.")
        return empty

    _CATALOG_INITIALISED = True

    if created or updated:
        logger.info("Token catalog initialisation completed. created=%s updated=%s", created, updated)
    else:
        logger.info("Token catalog initialisation completed. No changes required.")

    return {"created": created, "updated": updated}


def init_catalog_after_migrate(sender, **kwargs):
    from django.conf import settings

    if not getattr(settings, "BILLING_SEED_DEFAULTS_ON_MIGRATE", True):
        return
    logger.info("[Billing] Running ensure_default_token_catalog() after migrate")
    ensure_default_token_catalog(force=True)


class BillingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"

    def ready(self):
        post_migrate.connect(init_catalog_after_migrate, sender=self)

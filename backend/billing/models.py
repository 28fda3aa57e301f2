"""Billing models for the token economy: pricing, plans, subscriptions, ledger and charges."""
import uuid
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q

from tenants.models import Tenant


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "BILLING_CURRENCY", "usd").lower()


class TokenPricing(models.Model):
    """Versioned token cost of a metered action type."""

    class Category(models.TextChoices):
        TRANSCRIPTION = "transcription", "Transcription"
        PROPOSAL = "proposal", "Proposal"
        EMAIL = "email", "Email"
        CRM = "crm", "CRM"
        EXPORT = "export", "Export"
        ANALYTICS = "analytics", "Analytics"
        OTHER = "other", "Other"

    PRICED_FIELDS = ("action_type", "version", "token_cost")

    action_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Identifier feature modules pass when requesting authorization",
    )
    version = models.PositiveIntegerField(
        default=1,
        help_text="Catalog version; a price change publishes a new version",
    )
    display_name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    category = models.CharField(
        max_length=20,
        choices=Category.choices,
        default=Category.OTHER,
        help_text="Grouping used for usage analytics",
    )
    token_cost = models.PositiveIntegerField(
        help_text="Tokens debited each time the action runs",
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Only the active version of an action type is priced",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_token_pricing"
        verbose_name = "Token pricing"
        verbose_name_plural = "Token pricing"
        ordering = ["category", "token_cost", "action_type"]
        constraints = [
            models.UniqueConstraint(
                fields=["action_type", "version"],
                name="unique_token_pricing_version",
            ),
            models.UniqueConstraint(
                fields=["action_type"],
                condition=Q(is_active=True),
                name="unique_active_token_pricing",
            ),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding and self.transactions.exists():
            original = TokenPricing.objects.get(pk=self.pk)
            changed = [
                field for field in self.PRICED_FIELDS
                if getattr(original, field) != getattr(self, field)
            ]
            if changed:
                raise ValidationError(
                    "TokenPricing entries referenced by transactions are immutable; publish a new version instead."
                )
        super().save(*args, **kwargs)
        from .services.pricing_catalog import invalidate_pricing_cache

        invalidate_pricing_cache(self.action_type)

    def delete(self, *args, **kwargs):
        """Catalog entries are never removed; deleting deactivates the entry."""
        if self.is_active:
            self.is_active = False
            self.save(update_fields=["is_active", "updated_at"])
        return 0, {}

    def __str__(self):
        return f"TokenPricing<{self.action_type} v{self.version}:{self.token_cost}>"


class SubscriptionPlan(models.Model):
    """Immutable plan reference data: price, token allocation and overage terms."""

    IMMUTABLE_FIELDS = (
        "monthly_price",
        "annual_price",
        "monthly_tokens",
        "annual_tokens",
        "currency",
        "overage_token_cost",
        "allow_overage",
        "overage_token_limit",
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.SlugField(max_length=100, unique=True)
    display_name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    monthly_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        help_text="Monthly subscription price in billing currency",
    )
    annual_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        validators=[MinValueValidator(0)],
        help_text="Annual subscription price in billing currency",
    )
    monthly_tokens = models.PositiveIntegerField(
        help_text="Tokens granted each monthly period",
    )
    annual_tokens = models.PositiveIntegerField(
        default=0,
        help_text="Tokens granted per year on annual billing; sliced monthly",
    )
    currency = models.CharField(max_length=10, default=_default_currency)
    overage_token_cost = models.DecimalField(
        max_digits=10,
        decimal_places=4,
        validators=[MinValueValidator(0)],
        help_text="Price charged per token consumed below a zero balance",
    )
    allow_overage = models.BooleanField(
        default=True,
        help_text="Whether subscribers may consume into a negative balance",
    )
    overage_token_limit = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Deepest negative balance allowed under overage; empty means unbounded",
    )
    features = models.JSONField(default=dict, blank=True)
    is_active = models.BooleanField(default=True)
    sort_order = models.PositiveSmallIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription_plan"
        verbose_name = "Subscription plan"
        verbose_name_plural = "Subscription plans"
        ordering = ["sort_order", "monthly_price", "name"]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            original = SubscriptionPlan.objects.filter(pk=self.pk).first()
            if original is not None:
                changed = [
                    field for field in self.IMMUTABLE_FIELDS
                    if getattr(original, field) != getattr(self, field)
                ]
                if changed:
                    raise ValidationError(
                        f"SubscriptionPlan terms are immutable; create a new plan instead (changed: {', '.join(changed)})."
                    )
        return super().save(*args, **kwargs)

    def allocation_for(self, billing_interval: str) -> int:
        """Tokens granted per monthly allocation period for the given billing interval."""
        if billing_interval == TenantSubscription.BillingInterval.YEAR and self.annual_tokens:
            return self.annual_tokens // 12
        return self.monthly_tokens

    def price_for(self, billing_interval: str) -> Decimal:
        """Monthly-equivalent price for the given billing interval."""
        if billing_interval == TenantSubscription.BillingInterval.YEAR and self.annual_price:
            return self.annual_price / Decimal(12)
        return self.monthly_price

    def __str__(self):
        return f"SubscriptionPlan<{self.name}>"


class TenantSubscription(models.Model):
    """
    Token subscription of a tenant.

    ``token_balance`` is a cache of the transaction ledger fold and is written
    only by ``billing.services.token_ledger``.
    """

    class Status(models.TextChoices):
        TRIALING = "trialing", "Trialing"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past Due"
        CANCELED = "canceled", "Canceled"

    class BillingInterval(models.TextChoices):
        MONTH = "month", "Monthly"
        YEAR = "year", "Annual"

    CONSUMABLE_STATUSES = (Status.ACTIVE, Status.TRIALING)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant = models.OneToOneField(
        Tenant,
        on_delete=models.PROTECT,
        related_name="token_subscription",
    )
    plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
        help_text="Current plan in use",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ACTIVE,
    )
    billing_interval = models.CharField(
        max_length=10,
        choices=BillingInterval.choices,
        default=BillingInterval.MONTH,
    )

    token_balance = models.IntegerField(
        default=0,
        help_text="Current balance; negative values are overage debt",
    )
    monthly_allocation = models.PositiveIntegerField(
        help_text="Tokens granted at each period rollover",
    )
    tokens_used_this_period = models.PositiveIntegerField(default=0)
    lifetime_tokens_used = models.PositiveBigIntegerField(default=0)

    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()

    overage_token_cost = models.DecimalField(max_digits=10, decimal_places=4)
    allow_overage = models.BooleanField(default=True)
    overage_token_limit = models.PositiveIntegerField(null=True, blank=True)

    trial_ends_at = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    canceled_at = models.DateTimeField(null=True, blank=True)

    ledger_sequence = models.PositiveBigIntegerField(
        default=0,
        help_text="Sequence number of the latest ledger transaction",
    )
    last_rollover_period_end = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Period boundary most recently rolled over",
    )

    debits_frozen = models.BooleanField(
        default=False,
        help_text="Set when ledger verification failed; debits are refused until reconciled",
    )
    frozen_reason = models.TextField(blank=True)
    frozen_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_tenant_subscription"
        verbose_name = "Tenant subscription"
        verbose_name_plural = "Tenant subscriptions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "current_period_end"], name="billing_sub_status_period_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(current_period_end__gt=F("current_period_start")),
                name="tenant_subscription_period_order",
            ),
        ]

    @property
    def is_trialing(self) -> bool:
        return self.status == self.Status.TRIALING

    @property
    def is_consumable(self) -> bool:
        return self.status in self.CONSUMABLE_STATUSES

    @property
    def debit_floor(self):
        """Lowest balance a debit may leave behind; ``None`` when unbounded."""
        if not self.allow_overage:
            return 0
        if self.overage_token_limit is None:
            return None
        return -self.overage_token_limit

    def __str__(self):
        return f"TenantSubscription<{self.tenant_id}:{self.plan_id}:{self.token_balance}>"


class TokenTransaction(models.Model):
    """Immutable, per-subscription ordered ledger of token balance changes."""

    class TransactionType(models.TextChoices):
        CONSUME = "consume", "Consume"
        ALLOCATION = "allocation", "Allocation"
        REFILL = "refill", "Refill"
        BONUS = "bonus", "Bonus"
        # Reserved: overage is billed through BillingCharge, never as a ledger row.
        OVERAGE_CHARGE = "overage_charge", "Overage charge"
        PLAN_ADJUSTMENT = "plan_adjustment", "Plan adjustment"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.PROTECT,
        related_name="token_transactions",
    )
    subscription = models.ForeignKey(
        TenantSubscription,
        on_delete=models.PROTECT,
        related_name="transactions",
    )
    sequence = models.PositiveBigIntegerField(
        help_text="Position of the transaction in the subscription ledger",
    )
    type = models.CharField(
        max_length=20,
        choices=TransactionType.choices,
        help_text="Categorisation of the token movement",
    )
    tokens = models.IntegerField(
        help_text="Signed token delta; positive for credits, negative for debits",
    )
    balance_before = models.IntegerField()
    balance_after = models.IntegerField()
    action_type = models.CharField(max_length=100, blank=True)
    pricing = models.ForeignKey(
        TokenPricing,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
        help_text="Catalog version that priced a consume transaction",
    )
    action_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Identifier of the feature-module object the tokens were spent on",
    )
    description = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    metadata_version = models.PositiveSmallIntegerField(default=1)
    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Per-subscription key to guarantee idempotent transaction writes",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_token_transaction"
        verbose_name = "Token transaction"
        verbose_name_plural = "Token transactions"
        ordering = ["-created_at", "-sequence"]
        indexes = [
            models.Index(fields=["tenant", "created_at"], name="billing_tx_tenant_created_idx"),
            models.Index(fields=["tenant", "type", "created_at"], name="billing_tx_tenant_type_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=~Q(tokens=0), name="token_transaction_non_zero"),
            models.CheckConstraint(
                condition=Q(balance_after=F("balance_before") + F("tokens")),
                name="token_transaction_balance_chain",
            ),
            models.UniqueConstraint(
                fields=["subscription", "sequence"],
                name="unique_token_transaction_sequence",
            ),
            models.UniqueConstraint(
                fields=["subscription", "idempotency_key"],
                condition=Q(idempotency_key__isnull=False),
                name="unique_token_transaction_subscription_key",
            ),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("TokenTransaction records are immutable and cannot be updated.")
        self.full_clean()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("TokenTransaction records are immutable and cannot be deleted.")

    def __str__(self):
        return f"TokenTransaction<{self.type}:{self.tokens} for {self.tenant_id} #{self.sequence}>"


class BillingCharge(models.Model):
    """Monetary event handed to the external invoicing provider."""

    class Kind(models.TextChoices):
        OVERAGE = "overage", "Overage"
        PLAN_PRORATION = "plan_proration", "Plan proration"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SUBMITTED = "submitted", "Submitted"
        FAILED = "failed", "Failed"
        SKIPPED = "skipped", "Skipped"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.PROTECT,
        related_name="billing_charges",
    )
    subscription = models.ForeignKey(
        TenantSubscription,
        on_delete=models.PROTECT,
        related_name="billing_charges",
    )
    kind = models.CharField(max_length=20, choices=Kind.choices)
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=4,
        help_text="Signed amount; negative values are credits owed to the tenant",
    )
    currency = models.CharField(max_length=10, default=_default_currency)
    tokens = models.IntegerField(
        default=0,
        help_text="Tokens the charge was computed from",
    )
    unit_rate = models.DecimalField(
        max_digits=10,
        decimal_places=4,
        null=True,
        blank=True,
        help_text="Per-token rate applied for overage charges",
    )
    token_transaction = models.ForeignKey(
        TokenTransaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="billing_charges",
    )
    description = models.CharField(max_length=255, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
    )
    attempts = models.PositiveIntegerField(default=0)
    external_reference = models.CharField(
        max_length=255,
        blank=True,
        help_text="Invoicing provider identifier once submitted",
    )
    failure_reason = models.TextField(blank=True)
    idempotency_key = models.CharField(max_length=255, unique=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_charge"
        verbose_name = "Billing charge"
        verbose_name_plural = "Billing charges"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="billing_charge_status_idx"),
            models.Index(fields=["tenant", "kind"], name="billing_charge_tenant_kind_idx"),
        ]

    def __str__(self):
        return f"BillingCharge<{self.kind}:{self.amount} {self.currency} for {self.tenant_id}>"


class BillingAuditLog(models.Model):
    """Structured audit log for key billing lifecycle events."""

    id = models.BigAutoField(primary_key=True)
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="billing_audit_logs",
        help_text="Tenant associated with the event.",
    )
    event_type = models.CharField(max_length=100, help_text="Classification of the billing event.")
    actor = models.CharField(
        max_length=255,
        blank=True,
        help_text="Auth user or system actor responsible.",
    )
    request_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Correlation or request identifier for tracing.",
    )
    details = models.JSONField(
        blank=True,
        null=True,
        help_text="Structured data describing the event.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_audit_log"
        verbose_name = "Billing audit log"
        verbose_name_plural = "Billing audit logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant", "event_type"], name="billing_audit_tenant_event_idx"),
        ]

    def __str__(self):
        return f"BillingAuditLog<{self.tenant_id}:{self.event_type}>"

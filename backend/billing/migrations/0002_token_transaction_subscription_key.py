from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('billing', '0001_initial'),
    ]

    operations = [
        migrations.RemoveConstraint(
            model_name='tokentransaction',
            name='unique_token_transaction_idempotency_key',
        ),
        migrations.AlterField(
            model_name='tokentransaction',
            name='idempotency_key',
            field=models.CharField(blank=True, help_text='Per-subscription key to guarantee idempotent transaction writes', max_length=255, null=True),
        ),
        migrations.AddConstraint(
            model_name='tokentransaction',
            constraint=models.UniqueConstraint(condition=models.Q(('idempotency_key__isnull', False)), fields=('subscription', 'idempotency_key'), name='unique_token_transaction_subscription_key'),
        ),
    ]

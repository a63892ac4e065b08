import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('orders', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='PaymentAttempt',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('method', models.CharField(choices=[('card', 'Card'), ('mpesa', 'M-PESA')], max_length=10)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('phone', models.CharField(max_length=15)),
                ('outcome', models.CharField(choices=[('pending', 'Pending'), ('succeeded', 'Succeeded'), ('failed', 'Failed')], default='pending', max_length=10)),
                ('merchant_request_id', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('checkout_request_id', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('result_code', models.IntegerField(blank=True, null=True)),
                ('result_desc', models.CharField(blank=True, default='', max_length=255)),
                ('receipt_number', models.CharField(blank=True, max_length=32, null=True)),
                ('paid_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('payer_phone', models.CharField(blank=True, max_length=15, null=True)),
                ('transaction_date', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('finalized_at', models.DateTimeField(blank=True, null=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payment_attempts', to='orders.order')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['outcome', 'created_at'], name='attempt_outcome_created_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('outcome', 'pending')), fields=('order',), name='one_pending_attempt_per_order'),
                ],
            },
        ),
        migrations.CreateModel(
            name='GatewayCallback',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('checkout_request_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('payload', models.JSONField(blank=True, null=True)),
                ('disposition', models.CharField(choices=[('applied', 'Applied'), ('duplicate', 'Duplicate'), ('orphan', 'Orphan'), ('malformed', 'Malformed'), ('error', 'Error')], max_length=10)),
                ('detail', models.CharField(blank=True, default='', max_length=255)),
                ('received_at', models.DateTimeField(auto_now_add=True)),
                ('attempt', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='callbacks', to='payments.paymentattempt')),
            ],
            options={
                'ordering': ['-received_at'],
            },
        ),
    ]

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import transactions.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('store', '0001_initial'),
        ('users', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_id', models.CharField(default=transactions.models.generate_order_id, editable=False, max_length=32, unique=True)),
                ('status', models.CharField(choices=[('unconfirmed', 'Unconfirmed'), ('processing', 'Processing'), ('ready_to_ship', 'Ready to ship'), ('shipped', 'Shipped'), ('out_for_delivery', 'Out for delivery'), ('delivered', 'Delivered'), ('cancelled', 'Cancelled'), ('returned', 'Returned')], db_index=True, default='unconfirmed', max_length=20)),
                ('subtotal', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('delivery_charges', models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ('discount_amount', models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ('total', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('payment_option', models.CharField(default='razorpay', max_length=30)),
                ('payment_status', models.CharField(choices=[('pending', 'Pending'), ('paid', 'Paid'), ('failed', 'Failed'), ('refunded', 'Refunded')], default='pending', max_length=10)),
                ('gateway_order_id', models.CharField(blank=True, db_index=True, max_length=64)),
                ('gateway_payment_id', models.CharField(blank=True, max_length=64)),
                ('payment_amount', models.PositiveIntegerField(blank=True, help_text='Captured amount in paise', null=True)),
                ('payment_method', models.CharField(blank=True, max_length=30)),
                ('payment_verified_at', models.DateTimeField(blank=True, null=True)),
                ('payment_failure_reason', models.CharField(blank=True, max_length=255)),
                ('refund_id', models.CharField(blank=True, max_length=64)),
                ('refund_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('refund_status', models.CharField(blank=True, choices=[('', 'Not requested'), ('pending', 'Pending'), ('processed', 'Processed'), ('failed', 'Failed'), ('manual_review', 'Manual review')], default='', max_length=20)),
                ('refund_initiated_at', models.DateTimeField(blank=True, null=True)),
                ('refund_processed_at', models.DateTimeField(blank=True, null=True)),
                ('refund_reason', models.CharField(blank=True, max_length=255)),
                ('refund_receipt', models.CharField(blank=True, max_length=40)),
                ('refund_error', models.TextField(blank=True)),
                ('carrier_order_id', models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ('carrier_shipment_id', models.CharField(blank=True, db_index=True, max_length=64)),
                ('awb_code', models.CharField(blank=True, db_index=True, max_length=64)),
                ('courier_name', models.CharField(blank=True, max_length=100)),
                ('shipping_status', models.CharField(blank=True, help_text='Raw carrier status', max_length=64)),
                ('pickup_location', models.CharField(blank=True, max_length=64)),
                ('etd', models.CharField(blank=True, max_length=64)),
                ('pickup_date', models.DateTimeField(blank=True, null=True)),
                ('delivered_date', models.DateTimeField(blank=True, null=True)),
                ('shipping_last_update', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('shipping_history', models.JSONField(blank=True, default=list)),
                ('cancellation_reason', models.CharField(blank=True, max_length=255)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('address', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='orders', to='users.address')),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='orders', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['status', 'shipping_last_update'], name='order_status_sync_idx')],
            },
        ),
        migrations.CreateModel(
            name='OrderItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('product_name', models.CharField(max_length=255)),
                ('sku', models.CharField(blank=True, max_length=64)),
                ('quantity', models.PositiveIntegerField()),
                ('price_at_purchase', models.DecimalField(decimal_places=2, max_digits=10)),
                ('selected_size', models.CharField(blank=True, max_length=20)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='items', to='transactions.order')),
                ('product', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, to='store.product')),
                ('vendor', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='order_items', to='users.vendor')),
            ],
        ),
        migrations.CreateModel(
            name='OrderEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('event', models.CharField(db_index=True, max_length=64)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('dispatched', 'Dispatched'), ('failed', 'Failed')], default='pending', max_length=12)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('last_error', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('dispatched_at', models.DateTimeField(blank=True, null=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='events', to='transactions.order')),
            ],
            options={
                'ordering': ['created_at'],
                'indexes': [models.Index(fields=['status', 'created_at'], name='orderevent_status_created_idx')],
            },
        ),
        migrations.CreateModel(
            name='TransactionLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action', models.CharField(blank=True, max_length=50)),
                ('message', models.TextField()),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('level', models.CharField(default='INFO', max_length=10)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='logs', to='transactions.order')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
    ]

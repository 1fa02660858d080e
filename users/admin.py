from django.contrib import admin

from .models import Vendor, Address
from .notification_models import Notification, NotificationLog


@admin.register(Vendor)
class VendorAdmin(admin.ModelAdmin):
    list_display = ('store_name', 'user', 'city', 'pincode', 'pickup_location', 'pickup_location_added')
    search_fields = ('store_name', 'user__email', 'pickup_location')
    list_filter = ('pickup_location_added', 'is_verified_vendor')


@admin.register(Address)
class AddressAdmin(admin.ModelAdmin):
    list_display = ('name', 'user', 'locality', 'state', 'pincode', 'address_type')
    search_fields = ('name', 'user__email', 'pincode')


class NotificationLogInline(admin.TabularInline):
    model = NotificationLog
    extra = 0
    readonly_fields = ('event_type', 'channel', 'status', 'error_message', 'created_at')


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ('title', 'user', 'event', 'template', 'status', 'send_attempts', 'created_at')
    list_filter = ('status', 'event', 'template')
    search_fields = ('title', 'user__email', 'related_object_id')
    readonly_fields = ('created_at', 'sent_at')
    inlines = [NotificationLogInline]

from django.db import models
from django.conf import settings

User = settings.AUTH_USER_MODEL


class Vendor(models.Model):
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="vendor_profile")
    store_name = models.CharField(max_length=150)
    contact = models.CharField(max_length=15, blank=True)

    # Store (pickup) address
    address_line_1 = models.CharField(max_length=255, blank=True)
    address_line_2 = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=100, blank=True)
    state = models.CharField(max_length=100, blank=True)
    pincode = models.CharField(max_length=10, blank=True)
    country = models.CharField(max_length=100, default='India')

    # Carrier pickup-location registration, done once per vendor
    pickup_location = models.CharField(max_length=36, blank=True)
    pickup_location_added = models.BooleanField(default=False)

    is_verified_vendor = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.store_name

    @property
    def email(self):
        return self.user.email


class Address(models.Model):
    class AddressType(models.TextChoices):
        HOME = 'home', 'Home'
        WORK = 'work', 'Work'
        OTHER = 'other', 'Other'

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="addresses")
    name = models.CharField(max_length=150)
    contact = models.CharField(max_length=15)
    address_line_1 = models.CharField(max_length=255)
    address_line_2 = models.CharField(max_length=255, blank=True)
    locality = models.CharField(max_length=100)
    state = models.CharField(max_length=100)
    pincode = models.CharField(max_length=10)
    country = models.CharField(max_length=100, default='India')
    address_type = models.CharField(max_length=10, choices=AddressType.choices, default=AddressType.HOME)
    is_default = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name_plural = "Addresses"

    def __str__(self):
        return f"{self.name}, {self.locality} {self.pincode}"

    @property
    def full_address(self):
        return ", ".join(part for part in (self.address_line_1, self.address_line_2) if part)


# Registered with the app from their own module
from .notification_models import Notification, NotificationLog  # noqa: E402,F401

from decimal import Decimal

from django.db import models
from django.utils.text import slugify

from users.models import Vendor


class Product(models.Model):
    """
    Catalog entry as seen by order fulfilment: price, SKU and the
    package dimensions declared to the carrier.
    """
    store = models.ForeignKey(Vendor, on_delete=models.CASCADE, related_name='products')
    name = models.CharField(max_length=255)
    slug = models.SlugField(unique=True, blank=True)
    sku = models.CharField(max_length=64, blank=True)
    category = models.CharField(max_length=100, blank=True)
    hsn_code = models.CharField(max_length=16, blank=True)
    price = models.DecimalField(max_digits=10, decimal_places=2)

    # Shipping dimensions (cm / kg); carrier defaults apply when unset
    weight = models.DecimalField(max_digits=6, decimal_places=3, default=Decimal('0.500'))
    length = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)
    breadth = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)
    height = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def save(self, *args, **kwargs):
        if not self.slug:
            base_slug = slugify(self.name) or 'product'
            slug = base_slug
            num = 1
            while Product.objects.filter(slug=slug).exists():
                slug = f"{base_slug}-{num}"
                num += 1
            self.slug = slug
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name

    @property
    def vendor(self):
        return self.store

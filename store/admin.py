from django.contrib import admin
from .models import Product


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ('name', 'store', 'sku', 'category', 'price', 'weight', 'created_at')
    list_filter = ('category', 'store')
    search_fields = ('name', 'sku')
    readonly_fields = ('slug', 'created_at', 'updated_at')
    fieldsets = (
        ('Basic Information', {
            'fields': ('name', 'slug', 'store', 'category', 'sku', 'hsn_code', 'price')
        }),
        ('Shipping', {
            'fields': ('weight', 'length', 'breadth', 'height')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

from rest_framework.permissions import BasePermission

# =====================================================
# Role Permissions
# =====================================================

class IsAdmin(BasePermission):
    """
    Allows access only to users with role ADMIN (or superusers)
    """
    def has_permission(self, request, view):
        return request.user.is_authenticated and request.user.is_admin


class IsAdminOrVendor(BasePermission):
    """
    Access allowed if user is ADMIN or VENDOR
    """
    def has_permission(self, request, view):
        return request.user.is_authenticated and (request.user.is_admin or request.user.is_vendor)


def can_view_order(user, order):
    """Owners and admins can read an order; vendors can read orders holding their items."""
    if not user.is_authenticated:
        return False
    if user.is_admin or order.customer_id == user.id:
        return True
    if user.is_vendor:
        return order.items.filter(vendor__user=user).exists()
    return False

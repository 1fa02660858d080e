from django.utils.translation import gettext_lazy as _
from rest_framework.exceptions import APIException


class InvalidTransition(APIException):
    """
    The order is not in a state that allows the requested change.
    Nothing is mutated when this is raised.
    """
    status_code = 400
    default_detail = _('This action is not allowed for the current order status.')
    default_code = 'invalid_transition'

    def __init__(self, detail=None, code=None, current_status=None, target_status=None):
        super().__init__(detail, code)
        self.current_status = current_status
        self.target_status = target_status


class OrderNotFound(APIException):
    status_code = 404
    default_detail = _('Order not found.')
    default_code = 'order_not_found'


class UserNotFound(APIException):
    status_code = 404
    default_detail = _('The customer for this order could not be found.')
    default_code = 'user_not_found'


class AddressNotFound(APIException):
    status_code = 404
    default_detail = _('The delivery address for this order could not be found.')
    default_code = 'address_not_found'


class OrderOwnershipError(APIException):
    status_code = 403
    default_detail = _('You do not have permission to modify this order.')
    default_code = 'order_ownership'


class ConcurrentOrderUpdate(APIException):
    status_code = 409
    default_detail = _('The order was modified by another request. Please try again.')
    default_code = 'concurrent_update'

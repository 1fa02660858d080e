from django.utils.translation import gettext_lazy as _
from rest_framework.exceptions import APIException


class InvalidWebhookSignature(APIException):
    status_code = 401
    default_detail = _('Invalid webhook signature')
    default_code = 'invalid_signature'


class ServiceNotConfigured(APIException):
    """
    Raised when an integration is called without its credentials configured.
    """
    status_code = 503
    default_detail = _('This integration is not configured.')
    default_code = 'service_not_configured'

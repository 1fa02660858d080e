import logging
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    NotAuthenticated,
    ValidationError,
)
from rest_framework_simplejwt.exceptions import TokenError

from .response import standardized_response

logger = logging.getLogger(__name__)


class BaseAPIView(APIView):
    """Base class for API views: envelope responses and uniform error handling"""

    def success(self, message=None, data=None, status_code=status.HTTP_200_OK):
        return Response(
            standardized_response(success=True, message=message, data=data),
            status=status_code,
        )

    def failure(self, message, status_code=status.HTTP_400_BAD_REQUEST, data=None, error_code=None):
        return Response(
            standardized_response(success=False, message=message, data=data, error=message, error_code=error_code),
            status=status_code,
        )

    def _extract_error_message(self, detail):
        """
        Keep structured error payloads (dict/list) for serializer errors and
        normalize simple details to strings.
        """
        if isinstance(detail, (dict, list)):
            return detail
        return str(detail)

    def handle_exception(self, exc):
        request = getattr(self, "request", None)
        method = getattr(request, "method", "UNKNOWN")
        path = getattr(request, "path", "UNKNOWN")
        user = getattr(request, "user", None)
        user_id = getattr(user, "id", None) or "anonymous"

        if isinstance(exc, (AuthenticationFailed, NotAuthenticated)):
            return Response(
                standardized_response(success=False, error=str(exc.detail)),
                status=status.HTTP_401_UNAUTHORIZED,
            )

        if isinstance(exc, TokenError):
            return Response(
                standardized_response(success=False, error='Invalid or expired token'),
                status=status.HTTP_401_UNAUTHORIZED,
            )

        if isinstance(exc, ValidationError):
            logger.warning("Validation error on %s %s (user=%s): %s", method, path, user_id, exc.detail)
            return Response(
                standardized_response(success=False, error=self._extract_error_message(exc.detail)),
                status=status.HTTP_400_BAD_REQUEST,
            )

        if isinstance(exc, APIException):
            error_code = getattr(exc, "default_code", None)
            if isinstance(exc.detail, str) and hasattr(exc.detail, "code"):
                error_code = exc.detail.code

            logger.warning(
                "API exception on %s %s (user=%s, status=%s, code=%s): %s",
                method,
                path,
                user_id,
                exc.status_code,
                error_code,
                exc.detail,
            )
            return Response(
                standardized_response(
                    success=False,
                    error=self._extract_error_message(exc.detail),
                    error_code=error_code,
                ),
                status=exc.status_code,
            )

        logger.exception("Unexpected error on %s %s (user=%s): %s", method, path, user_id, exc)
        return Response(
            standardized_response(success=False, error="An unexpected error occurred"),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

"""
Health check endpoint
"""
from django.conf import settings
from django.db import connection
from django.db.utils import Error as DatabaseError
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView


class HealthCheckView(APIView):
    """
    GET /api/v1/health/ - Health check endpoint
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request):
        try:
            connection.ensure_connection()
            db_status = 'healthy'
        except DatabaseError:
            db_status = 'unhealthy'

        return Response({
            'status': 'ok' if db_status == 'healthy' else 'degraded',
            'database': db_status,
            'esign_provider': settings.ESIGN_PROVIDER,
            'service': 'Lease Contract Signing API',
        })

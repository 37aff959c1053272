"""
URL configuration for contracts app
"""
from django.urls import include, path
from rest_framework.routers import DefaultRouter

from . import views
from .health_views import HealthCheckView

router = DefaultRouter()
router.register(r'contracts', views.ContractViewSet, basename='contract')
router.register(r'signatures', views.SignatureRecordViewSet, basename='signature')
router.register(r'exports', views.ContractExportJobViewSet, basename='export')

urlpatterns = [
    # ========== PROVIDER WEBHOOK ==========
    path('esign/callback/', views.esign_callback, name='esign-callback'),

    # ========== HEALTH ==========
    path('health/', HealthCheckView.as_view(), name='health'),

    path('', include(router.urls)),
]

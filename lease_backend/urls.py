from django.contrib import admin
from django.urls import path, include

from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView

from lease_backend.metrics import metrics_view

urlpatterns = [
    path('admin/', admin.site.urls),
    path('metrics', metrics_view),

    # OpenAPI/Swagger
    path('api/schema/', SpectacularAPIView.as_view(), name='openapi-schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='openapi-schema'), name='swagger-ui'),

    path('api/v1/', include('contracts.urls')),
]

"""
URL configuration for the Workspace Assistant backend.
"""
from django.urls import path, include

from apps.assistant.health import healthz, readyz


urlpatterns = [
    # Health check endpoints (no auth)
    path('healthz', healthz, name='healthz'),
    path('readyz', readyz, name='readyz'),

    # API routes
    path('api/assistant/', include('apps.assistant.urls')),
]

"""
URL configuration for assistant app.
"""
from django.urls import path

from apps.assistant.views import AskView

urlpatterns = [
    path('ask', AskView.as_view(), name='assistant_ask'),
]

"""
URL configuration for stats endpoints.
"""
from django.urls import path
from .views import CustodyStatsView

urlpatterns = [
    path('custody/', CustodyStatsView.as_view(), name='custody-stats'),
]

from django.urls import path, include
from .views import ShareListCreateView, download, health_live, health_ready

api_urlpatterns = [
    path('shares/', ShareListCreateView.as_view(), name='share-list'),
    path('stats/', include('shares.stats.urls')),
]

urlpatterns = [
    path('api/', include(api_urlpatterns)),
    path('d/<uuid:record_id>', download, name='share-download'),
    path('health', health_live, name='health'),
    path('health/live', health_live, name='health-live'),
    path('health/ready', health_ready, name='health-ready'),
]

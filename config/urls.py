from django.contrib import admin
from django.urls import include, path
from rest_framework_simplejwt.views import TokenRefreshView

from core.views import EmailOrUsernameTokenObtainPairView

api_v1_patterns = [
    path("token/", EmailOrUsernameTokenObtainPairView.as_view(), name="token-obtain"),
    path("token/refresh/", TokenRefreshView.as_view(), name="token-refresh"),
    # Branches, audit log and health probes.
    path("", include("core.urls")),
    # Stock ledger, levels, raw item catalog and alerts.
    path("", include("inventory.urls")),
]

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/v1/", include(api_v1_patterns)),
]

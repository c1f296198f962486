from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.views import (
    OrderDeductionView,
    RawItemViewSet,
    StockAlertViewSet,
    StockInView,
    StockLevelDetailView,
    StockLevelListView,
    StockMovementListView,
    StockOutView,
)

router = DefaultRouter()
router.register(r"raw-items", RawItemViewSet, basename="raw-item")
router.register(r"alerts", StockAlertViewSet, basename="stock-alert")

urlpatterns = router.urls + [
    path("stock/in/", StockInView.as_view(), name="stock-in"),
    path("stock/out/", StockOutView.as_view(), name="stock-out"),
    path("stock/order-deductions/", OrderDeductionView.as_view(), name="stock-order-deductions"),
    path("stock/levels/", StockLevelListView.as_view(), name="stock-levels"),
    path("stock/levels/<uuid:raw_item_id>/", StockLevelDetailView.as_view(), name="stock-level-detail"),
    path("stock/movements/", StockMovementListView.as_view(), name="stock-movements"),
]

from rest_framework.routers import DefaultRouter

from stock.views import StockItemViewSet

router = DefaultRouter()
router.register(r"stock-items", StockItemViewSet, basename="stock-item")

urlpatterns = router.urls

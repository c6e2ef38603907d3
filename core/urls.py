from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import AuditLogViewSet, EmployeeViewSet, healthz, readyz

router = DefaultRouter()
router.register(r"employees", EmployeeViewSet, basename="employee")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("healthz/", healthz, name="healthz"),
    path("readyz/", readyz, name="readyz"),
]

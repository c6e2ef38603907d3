from django.urls import path
from rest_framework.routers import DefaultRouter

from assignments.views import AssignmentViewSet, EmployeeStockView, LedgerTreeView, OrgSummaryView

router = DefaultRouter()
router.register(r"assignments", AssignmentViewSet, basename="assignment")

urlpatterns = router.urls + [
    path("ledger/tree/", LedgerTreeView.as_view(), name="ledger_tree"),
    path("ledger/employees/<str:emp_code>/stock/", EmployeeStockView.as_view(), name="ledger_employee_stock"),
    path("ledger/summary/", OrgSummaryView.as_view(), name="ledger_summary"),
]

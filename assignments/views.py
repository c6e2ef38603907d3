from django.db import transaction
from django.db.models import Q
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound, PermissionDenied, ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from assignments import services
from assignments.allocation import create_allocation
from assignments.ledger import LedgerFilters, build_tree, employee_stock, org_summary
from assignments.models import AssignmentNode
from assignments.serializers import (
    AllocationCreateSerializer,
    AllocationLineSerializer,
    AssignmentNodeSerializer,
    LRUpdateSerializer,
    UsageCreateSerializer,
)
from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, get_user_role, user_has_capability
from core.directory import entry_for_user, normalize_code
from core.models import User


def visible_nodes_for_user(queryset, user):
    """Admins and regional managers see every node; others see what they issued or received."""
    if get_user_role(user) in {User.Role.ADMIN, User.Role.REGIONAL_MANAGER}:
        return queryset
    emp_code = getattr(user, "emp_code", None)
    if not emp_code:
        return queryset.none()
    return queryset.filter(Q(assigned_by_code=emp_code) | Q(lines__employee_code=emp_code)).distinct()


class AssignmentViewSet(mixins.CreateModelMixin, viewsets.ReadOnlyModelViewSet):
    queryset = AssignmentNode.objects.select_related("item").prefetch_related("lines__usage_events")
    serializer_class = AssignmentNodeSerializer
    lookup_value_regex = r"[0-9a-fA-F-]{36}"
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "assignment.view",
        "retrieve": "assignment.view",
        "create": "assignment.create",
        "dispatch_node": "assignment.dispatch",
        "lr": "assignment.lr.update",
        "batch_lr": "assignment.lr.update",
        "pod": "assignment.pod.send",
        "usage": "usage.record",
        "vendor_queue": "assignment.dispatch",
        "mine": "assignment.view",
    }

    def get_serializer_class(self):
        if self.action == "create":
            return AllocationCreateSerializer
        return super().get_serializer_class()

    def get_queryset(self):
        qs = visible_nodes_for_user(super().get_queryset(), self.request.user)
        params = self.request.query_params

        assignment_id = params.get("assignment_id")
        purpose = params.get("purpose")
        state = params.get("dispatch_state")
        item = params.get("item")
        year = params.get("year")

        if assignment_id:
            qs = qs.filter(assignment_id=assignment_id)
        if purpose:
            qs = qs.filter(purpose=purpose)
        if state:
            qs = qs.filter(dispatch_state=state)
        if item:
            qs = qs.filter(item__name__icontains=item)
        if year:
            if not year.isdigit():
                raise ValidationError({"year": "Year must be an integer."})
            qs = qs.filter(item__year=int(year))
        return qs

    def _audit(self, action_name, node, before_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=f"assignment.{action_name}",
            entity="assignment_node",
            entity_id=node.id,
            before_snapshot=before_snapshot,
            after_snapshot=AssignmentNodeSerializer(node).data,
        )

    def _reload(self, node):
        return AssignmentNode.objects.select_related("item").prefetch_related("lines__usage_events").get(pk=node.pk)

    def create(self, request, *args, **kwargs):
        serializer = AllocationCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        assigner = entry_for_user(request.user)
        with transaction.atomic():
            nodes = create_allocation(serializer.to_request(), assigner, purpose=serializer.validated_data.get("purpose"))
            nodes = [self._reload(node) for node in nodes]
            for node in nodes:
                self._audit("create", node)

        return Response(
            {
                "assignment_ids": sorted({node.assignment_id for node in nodes}),
                "nodes": AssignmentNodeSerializer(nodes, many=True).data,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="dispatch")
    def dispatch_node(self, request, pk=None):
        before_snapshot = AssignmentNodeSerializer(self.get_object()).data
        with transaction.atomic():
            node = self._reload(services.dispatch(pk))
            self._audit("dispatch", node, before_snapshot)
        return Response(AssignmentNodeSerializer(node).data)

    @action(detail=True, methods=["post"], url_path="lr")
    def lr(self, request, pk=None):
        serializer = LRUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = AssignmentNodeSerializer(self.get_object()).data
        with transaction.atomic():
            node = services.set_lr(pk, serializer.validated_data["lr_no"], updated_by=request.user.get_username())
            node = self._reload(node)
            self._audit("lr", node, before_snapshot)
        return Response(AssignmentNodeSerializer(node).data)

    @action(detail=False, methods=["post"], url_path=r"batches/(?P<assignment_id>[^/.]+)/lr")
    def batch_lr(self, request, assignment_id=None):
        serializer = LRUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        batch = AssignmentNode.objects.filter(assignment_id=assignment_id)
        batch_size = batch.count()
        # Every node of the batch must be visible to the caller.
        if not batch_size or visible_nodes_for_user(batch, request.user).count() != batch_size:
            raise NotFound(f"Assignment {assignment_id} not found.")

        before_snapshots = {
            node.id: AssignmentNodeSerializer(node).data
            for node in batch.select_related("item").prefetch_related("lines__usage_events")
        }
        with transaction.atomic():
            nodes = services.set_lr_for_assignment(
                assignment_id,
                serializer.validated_data["lr_no"],
                updated_by=request.user.get_username(),
            )
            nodes = [self._reload(node) for node in nodes]
            for node in nodes:
                self._audit("lr", node, before_snapshots.get(node.id))
        return Response({"assignment_id": assignment_id, "nodes": AssignmentNodeSerializer(nodes, many=True).data})

    @action(detail=True, methods=["post"], url_path="pod")
    def pod(self, request, pk=None):
        before_snapshot = AssignmentNodeSerializer(self.get_object()).data
        with transaction.atomic():
            node = self._reload(services.send_pod(pk))
            self._audit("pod", node, before_snapshot)
        return Response(AssignmentNodeSerializer(node).data)

    @action(detail=True, methods=["post"], url_path="usage")
    def usage(self, request, pk=None):
        serializer = UsageCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        self.get_object()

        own_code = getattr(request.user, "emp_code", None)
        employee_code = normalize_code(data.get("employee_code") or own_code)
        if employee_code != own_code and get_user_role(request.user) != User.Role.ADMIN:
            raise PermissionDenied("Only administrators may record usage for another employee.")

        with transaction.atomic():
            line = services.record_usage(
                pk,
                employee_code,
                data["reference_id"],
                data["qty"],
                used_by=request.user.get_username(),
            )
            payload = AllocationLineSerializer(line).data
            create_audit_log_from_request(
                request,
                action="assignment.usage",
                entity="allocation_line",
                entity_id=line.id,
                after_snapshot=payload,
            )
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["get"], url_path="vendor-queue")
    def vendor_queue(self, request):
        return Response(AssignmentNodeSerializer(services.vendor_queue(), many=True).data)

    @action(detail=False, methods=["get"], url_path="mine")
    def mine(self, request):
        emp_code = getattr(request.user, "emp_code", None)
        if not emp_code:
            return Response([])
        qs = (
            AssignmentNode.objects.filter(lines__employee_code=emp_code)
            .filter(Q(pod_visible=True) | Q(purpose=AssignmentNode.Purpose.TEAM_BIFURCATION))
            .select_related("item")
            .prefetch_related("lines__usage_events")
            .distinct()
        )
        return Response(AssignmentNodeSerializer(qs, many=True).data)


class LedgerTreeView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "ledger.view"}

    def get(self, request):
        filters = LedgerFilters.from_params(request.query_params)
        return Response(build_tree(filters))


class EmployeeStockView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, emp_code):
        emp_code = normalize_code(emp_code)
        if emp_code != getattr(request.user, "emp_code", None) and not user_has_capability(request.user, "ledger.view"):
            raise PermissionDenied("You may only view your own stock.")
        filters = LedgerFilters.from_params(request.query_params)
        return Response(employee_stock(emp_code, filters))


class OrgSummaryView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "ledger.summary"}

    def get(self, request):
        year = request.query_params.get("year")
        if not year or not year.isdigit():
            raise ValidationError({"year": "A four digit year is required."})
        return Response(
            org_summary(
                int(year),
                lot=request.query_params.get("lot"),
                region=request.query_params.get("region"),
            )
        )

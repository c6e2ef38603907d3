from django.db import transaction
from rest_framework import status, viewsets
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from stock.models import StockItem
from stock.serializers import StockItemSerializer, StockItemUpsertSerializer
from stock.services import upsert_item


class StockItemViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockItem.objects.all()
    serializer_class = StockItemSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "stock.view",
        "retrieve": "stock.view",
        "create": "stock.manage",
        "partial_update": "stock.manage",
    }

    def get_queryset(self):
        qs = super().get_queryset()
        year = self.request.query_params.get("year")
        lot = self.request.query_params.get("lot")
        name = self.request.query_params.get("name")

        if year:
            if not year.isdigit():
                raise ValidationError({"year": "Year must be an integer."})
            qs = qs.filter(year=int(year))
        if lot and lot.lower() != "all":
            qs = qs.filter(lot__iexact=lot)
        if name:
            qs = qs.filter(name__icontains=name)
        return qs

    def _upsert(self, request, data, before_snapshot=None):
        with transaction.atomic():
            item, created = upsert_item(
                data["name"],
                data["year"],
                data.get("lot"),
                data["opening"],
                updated_by=request.user.get_username(),
            )
            payload = StockItemSerializer(item).data
            create_audit_log_from_request(
                request,
                action="stock_item.create" if created else "stock_item.update",
                entity="stock_item",
                entity_id=item.id,
                before_snapshot=before_snapshot,
                after_snapshot=payload,
            )
        return Response(payload, status=status.HTTP_201_CREATED if created else status.HTTP_200_OK)

    def create(self, request, *args, **kwargs):
        """Create the item for (name, year, lot) or overwrite its opening quantity."""
        serializer = StockItemUpsertSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        before = StockItem.objects.filter(
            name=serializer.validated_data["name"].strip(),
            year=serializer.validated_data["year"],
            lot=serializer.validated_data["lot"].strip(),
        ).first()
        before_snapshot = StockItemSerializer(before).data if before else None
        return self._upsert(request, serializer.validated_data, before_snapshot)

    def partial_update(self, request, *args, **kwargs):
        item = self.get_object()
        if "opening" not in request.data:
            raise ValidationError({"opening": "This field is required."})
        before_snapshot = StockItemSerializer(item).data
        data = {"name": item.name, "year": item.year, "lot": item.lot, "opening": request.data["opening"]}
        return self._upsert(request, data, before_snapshot)

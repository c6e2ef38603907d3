from rest_framework import serializers

from assignments.allocation import EmployeeQty, EmployeeToItems, ItemKey, ItemQty, ItemToEmployees
from assignments.models import AllocationLine, AssignmentNode, UsageEvent


class UsageEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = UsageEvent
        fields = ["id", "reference_id", "qty", "used_by", "used_at"]
        read_only_fields = fields


class AllocationLineSerializer(serializers.ModelSerializer):
    usage_events = UsageEventSerializer(many=True, read_only=True)

    class Meta:
        model = AllocationLine
        fields = ["id", "employee_code", "employee_name", "qty_received", "used_qty", "usage_events"]
        read_only_fields = fields


class AssignmentNodeSerializer(serializers.ModelSerializer):
    item_name = serializers.CharField(source="item.name", read_only=True)
    year = serializers.IntegerField(source="item.year", read_only=True)
    lot = serializers.CharField(source="item.lot", read_only=True)
    lines = AllocationLineSerializer(many=True, read_only=True)

    class Meta:
        model = AssignmentNode
        fields = [
            "id",
            "assignment_id",
            "parent",
            "item",
            "item_name",
            "year",
            "lot",
            "mode",
            "purpose",
            "assigned_by_code",
            "assigned_by_name",
            "assigned_by_role",
            "region",
            "branch",
            "dispatch_state",
            "dispatched_at",
            "lr_no",
            "lr_updated_by",
            "lr_updated_at",
            "pod_visible",
            "pod_sent_at",
            "created_at",
            "lines",
        ]
        read_only_fields = fields


class ItemRefSerializer(serializers.Serializer):
    """An item given either by id or by its (name, year, lot) key."""

    item_id = serializers.UUIDField(required=False)
    name = serializers.CharField(required=False)
    year = serializers.IntegerField(required=False)
    lot = serializers.CharField(required=False)

    def validate(self, attrs):
        if attrs.get("item_id"):
            return attrs
        if not attrs.get("name") or attrs.get("year") is None:
            raise serializers.ValidationError("Provide item_id or name and year.")
        return attrs

    @staticmethod
    def to_ref(attrs):
        if attrs.get("item_id"):
            return attrs["item_id"]
        return ItemKey(name=attrs["name"], year=attrs["year"], lot=attrs.get("lot") or ItemKey.lot)


class EmployeeLineSerializer(serializers.Serializer):
    employee_code = serializers.CharField(max_length=32)
    qty = serializers.IntegerField()


class ItemLineSerializer(ItemRefSerializer):
    qty = serializers.IntegerField()
    parent_id = serializers.UUIDField(required=False, allow_null=True)


class AllocationCreateSerializer(serializers.Serializer):
    """Payload for both allocation modes.

    item_to_employees needs `item` and employee lines; employee_to_items
    needs `employee_code` and item lines. Quantities are validated by the
    allocation engine so its error codes reach the client unchanged.
    """

    mode = serializers.ChoiceField(choices=AssignmentNode.Mode.choices)
    purpose = serializers.ChoiceField(choices=AssignmentNode.Purpose.choices, required=False, allow_null=True)
    item = ItemRefSerializer(required=False)
    employee_code = serializers.CharField(max_length=32, required=False)
    parent_id = serializers.UUIDField(required=False, allow_null=True)
    lines = serializers.ListField(child=serializers.DictField(), allow_empty=True)

    def validate(self, attrs):
        mode = attrs["mode"]
        if mode == AssignmentNode.Mode.ITEM_TO_EMPLOYEES:
            if not attrs.get("item"):
                raise serializers.ValidationError({"item": "Required for item_to_employees."})
            line_serializer = EmployeeLineSerializer(data=attrs["lines"], many=True)
        else:
            if not attrs.get("employee_code"):
                raise serializers.ValidationError({"employee_code": "Required for employee_to_items."})
            line_serializer = ItemLineSerializer(data=attrs["lines"], many=True)

        if not line_serializer.is_valid():
            raise serializers.ValidationError({"lines": line_serializer.errors})
        attrs["lines"] = line_serializer.validated_data
        return attrs

    def to_request(self):
        data = self.validated_data
        if data["mode"] == AssignmentNode.Mode.ITEM_TO_EMPLOYEES:
            return ItemToEmployees(
                item=ItemRefSerializer.to_ref(data["item"]),
                lines=[EmployeeQty(employee_code=line["employee_code"], qty=line["qty"]) for line in data["lines"]],
                parent_id=data.get("parent_id"),
            )
        return EmployeeToItems(
            employee_code=data["employee_code"],
            lines=[
                ItemQty(item=ItemRefSerializer.to_ref(line), qty=line["qty"], parent_id=line.get("parent_id"))
                for line in data["lines"]
            ],
        )


class LRUpdateSerializer(serializers.Serializer):
    lr_no = serializers.CharField(allow_blank=True, trim_whitespace=True)


class UsageCreateSerializer(serializers.Serializer):
    employee_code = serializers.CharField(max_length=32, required=False)
    reference_id = serializers.CharField(max_length=128)
    qty = serializers.IntegerField()

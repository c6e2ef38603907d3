from rest_framework import serializers

from stock.models import StockItem


class StockItemSerializer(serializers.ModelSerializer):
    balance = serializers.IntegerField(read_only=True)

    class Meta:
        model = StockItem
        fields = ["id", "name", "year", "lot", "opening", "issued", "balance", "updated_by", "created_at", "updated_at"]
        read_only_fields = fields


class StockItemUpsertSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    year = serializers.IntegerField(min_value=2000, max_value=9999)
    lot = serializers.CharField(max_length=32, required=False, default=StockItem.DEFAULT_LOT)
    opening = serializers.IntegerField()

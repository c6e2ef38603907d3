import uuid

from django.db import migrations, models

import stock.models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="StockItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("year", models.PositiveIntegerField(default=stock.models.current_year)),
                ("lot", models.CharField(default="Lot 1", max_length=32)),
                ("opening", models.PositiveIntegerField(default=0)),
                ("issued", models.PositiveIntegerField(default=0)),
                ("updated_by", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-year", "name", "lot"],
                "indexes": [
                    models.Index(fields=["year", "lot"], name="stockitem_year_lot_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("name", "year", "lot"), name="uniq_stockitem_name_year_lot"),
                    models.CheckConstraint(
                        condition=models.Q(("issued__lte", models.F("opening"))),
                        name="stockitem_issued_lte_opening",
                    ),
                ],
            },
        ),
    ]

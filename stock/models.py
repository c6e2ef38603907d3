import uuid

from django.db import models
from django.db.models import F, Q
from django.utils import timezone


def current_year():
    return timezone.now().year


class StockItem(models.Model):
    """Central pool of one sample board per (name, year, lot).

    `balance` is always derived from `opening - issued`; the check
    constraints keep it non-negative at the database level.
    """

    DEFAULT_LOT = "Lot 1"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    year = models.PositiveIntegerField(default=current_year)
    lot = models.CharField(max_length=32, default=DEFAULT_LOT)
    opening = models.PositiveIntegerField(default=0)
    issued = models.PositiveIntegerField(default=0)
    updated_by = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-year", "name", "lot"]
        indexes = [
            models.Index(fields=["year", "lot"], name="stockitem_year_lot_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["name", "year", "lot"], name="uniq_stockitem_name_year_lot"),
            models.CheckConstraint(condition=Q(issued__lte=F("opening")), name="stockitem_issued_lte_opening"),
        ]

    def __str__(self):
        return f"{self.name} / {self.year} / {self.lot}"

    @property
    def balance(self):
        return self.opening - self.issued

    @property
    def key(self):
        return (self.name, self.year, self.lot)

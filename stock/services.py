import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import F

from common.exceptions import InsufficientStock, InvalidQuantity, UnknownItem
from stock.models import StockItem

logger = logging.getLogger(__name__)


def _clean_quantity(qty, *, allow_zero=False):
    if isinstance(qty, bool):
        raise InvalidQuantity()
    try:
        value = int(qty)
    except (TypeError, ValueError):
        raise InvalidQuantity()
    if value != qty and str(value) != str(qty).strip():
        raise InvalidQuantity()
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidQuantity()
    return value


def _clean_key(name, year, lot):
    name = (name or "").strip()
    lot = (lot or StockItem.DEFAULT_LOT).strip()
    try:
        year = int(year)
    except (TypeError, ValueError):
        raise UnknownItem(f"Invalid year {year!r} for stock item {name!r}.")
    return name, year, lot


def get_item(name, year, lot=None):
    name, year, lot = _clean_key(name, year, lot)
    item = StockItem.objects.filter(name=name, year=year, lot=lot).first()
    if item is None:
        raise UnknownItem(f"No stock item {name} / {year} / {lot}.", item=name, year=year, lot=lot)
    return item


def get_item_by_id(item_id):
    try:
        item = StockItem.objects.filter(id=item_id).first()
    except (DjangoValidationError, TypeError, ValueError):
        item = None
    if item is None:
        raise UnknownItem(f"No stock item with id {item_id}.")
    return item


def balance(item):
    """Fresh read of the derived balance, ignoring any stale instance."""
    opening, issued = StockItem.objects.filter(pk=item.pk).values_list("opening", "issued").get()
    return opening - issued


@transaction.atomic
def upsert_item(name, year, lot, opening, *, updated_by=""):
    """Create a stock item or overwrite its opening quantity.

    `issued` is never touched here; an opening lower than what is already
    issued is rejected instead of clamping the counters.
    """
    opening = _clean_quantity(opening, allow_zero=True)
    name, year, lot = _clean_key(name, year, lot)
    if not name:
        raise UnknownItem("Stock item name is required.")

    item = StockItem.objects.select_for_update().filter(name=name, year=year, lot=lot).first()
    if item is None:
        item = StockItem.objects.create(name=name, year=year, lot=lot, opening=opening, issued=0, updated_by=updated_by)
        logger.info("stock_item_created", extra={"item": str(item), "qty": opening, "balance": item.balance})
        return item, True

    if opening < item.issued:
        raise InvalidQuantity(
            f"Opening {opening} is below the {item.issued} boards already issued for {item}.",
            issued=item.issued,
            requested=opening,
        )

    item.opening = opening
    item.updated_by = updated_by
    item.save(update_fields=["opening", "updated_by", "updated_at"])
    logger.info("stock_item_updated", extra={"item": str(item), "qty": opening, "balance": item.balance})
    return item, False


def reserve(item, qty):
    """Atomically move `qty` boards from balance to issued.

    The check and the increment are one conditional UPDATE, so two
    concurrent reservations can never jointly overdraw the item. Returns the
    new balance.
    """
    qty = _clean_quantity(qty)
    updated = StockItem.objects.filter(pk=item.pk, opening__gte=F("issued") + qty).update(issued=F("issued") + qty)
    if not updated:
        current = StockItem.objects.filter(pk=item.pk).values_list("opening", "issued").first()
        if current is None:
            raise UnknownItem(f"No stock item with id {item.pk}.")
        current_balance = current[0] - current[1]
        logger.info(
            "stock_reservation_rejected",
            extra={"item": str(item), "qty": qty, "balance": current_balance},
        )
        raise InsufficientStock(
            f"Not enough stock for {item}. Available: {current_balance}, requested: {qty}.",
            item=str(item),
            balance=current_balance,
            requested=qty,
        )

    new_balance = balance(item)
    logger.info("stock_reserved", extra={"item": str(item), "qty": qty, "balance": new_balance})
    return new_balance

import logging

from sqlalchemy.orm import Session

from .errors import Conflict, InsufficientInventory, NotFound, ValidationFailed
from .models import InventoryRecord, ProductVariant, utcnow

logger = logging.getLogger(__name__)

ADJUSTABLE_FIELDS = ("quantity", "reserved_quantity", "reorder_level", "reorder_quantity")


class InventoryLedger:
    """
    Stock bookkeeping per product variant.
    Never commits: callers own the transaction, so a failed reservation
    rolls back together with the rest of the checkout.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, variant_id: int):
        """Returns the inventory record for a variant, or None."""
        return (
            self.db.query(InventoryRecord)
            .filter(InventoryRecord.product_variant_id == variant_id)
            .first()
        )

    def reserve(self, variant_id: int, quantity: int) -> None:
        """
        Decrements stock for a variant, only if enough is on hand.
        - Uses a single conditional UPDATE so two concurrent reservations can't both pass the check.
        - Raises InsufficientInventory when no row was updated.
        """
        if quantity <= 0:
            raise ValidationFailed("Reservation quantity must be positive")

        updated = (
            self.db.query(InventoryRecord)
            .filter(
                InventoryRecord.product_variant_id == variant_id,
                InventoryRecord.quantity >= quantity,
            )
            .update(
                {
                    InventoryRecord.quantity: InventoryRecord.quantity - quantity,
                    InventoryRecord.updated_at: utcnow(),
                },
            )
        )
        if updated == 0:
            logger.info("Reservation of %s unit(s) for variant %s rejected", quantity, variant_id)
            raise InsufficientInventory(variant_id, quantity)

        logger.debug("Reserved %s unit(s) of variant %s", quantity, variant_id)

    def release(self, variant_id: int, quantity: int) -> None:
        """Adds released units back to stock (cancellations)."""
        if quantity <= 0:
            raise ValidationFailed("Release quantity must be positive")

        updated = (
            self.db.query(InventoryRecord)
            .filter(InventoryRecord.product_variant_id == variant_id)
            .update(
                {
                    InventoryRecord.quantity: InventoryRecord.quantity + quantity,
                    InventoryRecord.updated_at: utcnow(),
                },
            )
        )
        if updated == 0:
            # Stock was reserved against this record at checkout, so it must still exist.
            raise NotFound("Inventory for product variant", variant_id)

        logger.debug("Released %s unit(s) of variant %s", quantity, variant_id)

    def create(self, variant_id: int, quantity: int = 0, reorder_level: int = 5,
               reorder_quantity: int = 10) -> InventoryRecord:
        """Creates the inventory record for a variant that has none yet."""
        if self.db.query(ProductVariant).filter(ProductVariant.id == variant_id).first() is None:
            raise NotFound("Product variant", variant_id)
        if self.get(variant_id) is not None:
            raise Conflict(f"Inventory already exists for product variant {variant_id}")
        _check_non_negative(
            quantity=quantity, reorder_level=reorder_level, reorder_quantity=reorder_quantity
        )

        record = InventoryRecord(
            product_variant_id=variant_id,
            quantity=quantity,
            reserved_quantity=0,
            reorder_level=reorder_level,
            reorder_quantity=reorder_quantity,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def adjust(self, variant_id: int, **changes) -> InventoryRecord:
        """
        Administrative correction of absolute quantities or reorder thresholds.
        Fields left as None are unchanged.
        """
        unknown = set(changes) - set(ADJUSTABLE_FIELDS)
        if unknown:
            raise ValidationFailed(f"Unknown inventory fields: {', '.join(sorted(unknown))}")

        values = {name: value for name, value in changes.items() if value is not None}
        if not values:
            raise ValidationFailed("No fields provided for update")
        _check_non_negative(**values)

        record = self.get(variant_id)
        if record is None:
            raise NotFound("Inventory for product variant", variant_id)

        for name, value in values.items():
            setattr(record, name, value)
        record.updated_at = utcnow()
        self.db.flush()
        logger.info("Inventory for variant %s adjusted: %s", variant_id, values)
        return record

    def _filtered(self, low_stock: bool):
        query = self.db.query(InventoryRecord)
        if low_stock:
            query = query.filter(InventoryRecord.quantity <= InventoryRecord.reorder_level)
        return query

    def list(self, low_stock: bool = False, page: int = 1, limit: int = 20):
        """Lists inventory records, lowest stock first."""
        return (
            self._filtered(low_stock)
            .order_by(InventoryRecord.quantity.asc(), InventoryRecord.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

    def count(self, low_stock: bool = False) -> int:
        return self._filtered(low_stock).count()


def _check_non_negative(**values):
    negative = [name for name, value in values.items() if value < 0]
    if negative:
        raise ValidationFailed(f"Inventory values must not be negative: {', '.join(negative)}")

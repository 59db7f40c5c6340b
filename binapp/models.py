from datetime import datetime

from .extensions import db


class Bin(db.Model):
    __tablename__ = "bin"
    __table_args__ = (
        db.CheckConstraint("row_count >= 1", name="ck_bin_row_count_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String, unique=True, nullable=False)
    row_count = db.Column(db.Integer, nullable=False, default=5)
    description = db.Column(db.String)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self):
        return f"<Bin {self.name} rows={self.row_count}>"


class StockItem(db.Model):
    """One sellable catalog entry, keyed by the marketplace product id."""

    __tablename__ = "stock_item"
    __table_args__ = (
        db.CheckConstraint("total_quantity >= 0", name="ck_stock_item_total_nonnegative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.Integer, unique=True, nullable=False)  # marketplace product id
    blueprint_id = db.Column(db.Integer)
    game = db.Column(db.String)
    set_code = db.Column(db.String, index=True)
    name = db.Column(db.String, nullable=False, default="")
    image_url = db.Column(db.String)
    condition = db.Column(db.String)
    is_foil = db.Column(db.Boolean, nullable=False, default=False)
    price = db.Column(db.Numeric(12, 2))
    total_quantity = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text)
    version_id = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    locations = db.relationship(
        "StockLocation",
        back_populates="stock_item",
        cascade="all, delete-orphan",
        order_by="StockLocation.position",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def assigned_quantity(self) -> int:
        return sum(location.quantity for location in self.locations)

    def touch(self):
        # Location-only changes must still bump the version stamp.
        self.updated_at = datetime.utcnow()

    def __repr__(self):
        return f"<StockItem {self.external_id} total={self.total_quantity}>"


class StockLocation(db.Model):
    __tablename__ = "stock_location"
    __table_args__ = (
        db.UniqueConstraint("stock_item_id", "bin_id", "bin_row", name="uq_stock_location_slot"),
        db.CheckConstraint("quantity >= 0", name="ck_stock_location_quantity_nonnegative"),
        db.CheckConstraint("bin_row >= 1", name="ck_stock_location_row_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_item_id = db.Column(
        db.Integer, db.ForeignKey("stock_item.id", ondelete="CASCADE"), nullable=False
    )
    bin_id = db.Column(db.Integer, db.ForeignKey("bin.id"), nullable=False)
    bin_row = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    position = db.Column(db.Integer, nullable=False, default=0)  # intake order

    stock_item = db.relationship("StockItem", back_populates="locations")
    bin = db.relationship("Bin", backref="stock_locations")

    def __repr__(self):
        return f"<StockLocation bin={self.bin_id} row={self.bin_row} qty={self.quantity}>"


class AllocationRecord(db.Model):
    """Durable reservation of physical stock for one order line."""

    __tablename__ = "allocation_record"
    __table_args__ = (
        db.UniqueConstraint(
            "order_id", "stock_item_external_id", name="uq_allocation_order_item"
        ),
        db.CheckConstraint("requested_quantity >= 0", name="ck_allocation_requested"),
        db.CheckConstraint("fulfilled_quantity >= 0", name="ck_allocation_fulfilled"),
        db.CheckConstraint("unfilled_quantity >= 0", name="ck_allocation_unfilled"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String, nullable=False, index=True)
    order_code = db.Column(db.String, index=True)
    stock_item_external_id = db.Column(db.Integer, nullable=False)
    item_name = db.Column(db.String)
    requested_quantity = db.Column(db.Integer, nullable=False)
    fulfilled_quantity = db.Column(db.Integer, nullable=False, default=0)
    unfilled_quantity = db.Column(db.Integer, nullable=False, default=0)
    picked = db.Column(db.Boolean, nullable=False, default=False)
    picked_at = db.Column(db.DateTime)
    picked_by = db.Column(db.String)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    picked_locations = db.relationship(
        "AllocationPick",
        back_populates="allocation",
        cascade="all, delete-orphan",
        order_by="AllocationPick.position",
    )

    def to_dict(self):
        return {
            "orderId": self.order_id,
            "orderCode": self.order_code,
            "externalId": self.stock_item_external_id,
            "name": self.item_name,
            "requestedQuantity": self.requested_quantity,
            "fulfilledQuantity": self.fulfilled_quantity,
            "unfilledQuantity": self.unfilled_quantity,
            "binLocations": [pick.to_dict() for pick in self.picked_locations],
            "picked": self.picked,
            "pickedAt": self.picked_at.isoformat() if self.picked_at else None,
            "pickedBy": self.picked_by,
        }

    def __repr__(self):
        return (
            f"<AllocationRecord order={self.order_id} item={self.stock_item_external_id} "
            f"fulfilled={self.fulfilled_quantity}/{self.requested_quantity}>"
        )


class AllocationPick(db.Model):
    __tablename__ = "allocation_pick"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_allocation_pick_quantity_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    allocation_id = db.Column(
        db.Integer, db.ForeignKey("allocation_record.id", ondelete="CASCADE"), nullable=False
    )
    bin_id = db.Column(db.Integer, nullable=False)
    bin_label = db.Column(db.String)  # snapshot of the bin name at allocation time
    bin_row = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    allocation = db.relationship("AllocationRecord", back_populates="picked_locations")

    def to_dict(self):
        return {
            "binId": self.bin_id,
            "bin": self.bin_label,
            "row": self.bin_row,
            "quantity": self.quantity,
        }


class ChangeLog(db.Model):
    __tablename__ = "change_log"

    id = db.Column(db.Integer, primary_key=True)
    change_type = db.Column(db.String, nullable=False, index=True)
    source = db.Column(db.String, nullable=False, default="system")
    message = db.Column(db.String, nullable=False)
    order_id = db.Column(db.String, index=True)
    external_id = db.Column(db.Integer)
    delta_quantity = db.Column(db.Integer)
    bin_id = db.Column(db.Integer)
    details = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.change_type,
            "source": self.source,
            "message": self.message,
            "orderId": self.order_id,
            "externalId": self.external_id,
            "deltaQuantity": self.delta_quantity,
            "binId": self.bin_id,
            "details": self.details,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

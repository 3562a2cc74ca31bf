import json
from datetime import datetime
from models.db import db

DISCOUNT_TYPES = ("percentage", "fixed")
CAMPAIGN_SCOPES = ("all", "category", "products")


class SalesCampaign(db.Model):
    __tablename__ = "sales_campaigns"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    banner_message = db.Column(db.String(255), nullable=True)

    discount_type = db.Column(db.String(20), nullable=False, default="percentage")
    discount_value = db.Column(db.Numeric(12, 2), nullable=False)
    min_order_amount = db.Column(db.Numeric(12, 2), nullable=True)
    max_discount_amount = db.Column(db.Numeric(12, 2), nullable=True)

    applies_to = db.Column(db.String(20), nullable=False, default="all")
    # JSON arrays of category names / product ids
    target_categories_json = db.Column(db.Text, nullable=True)
    target_product_ids_json = db.Column(db.Text, nullable=True)

    start_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    end_date = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    max_orders = db.Column(db.Integer, nullable=True)
    current_orders = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def target_categories(self):
        return json.loads(self.target_categories_json) if self.target_categories_json else []

    @target_categories.setter
    def target_categories(self, values):
        self.target_categories_json = json.dumps(list(values or []))

    @property
    def target_product_ids(self):
        return json.loads(self.target_product_ids_json) if self.target_product_ids_json else []

    @target_product_ids.setter
    def target_product_ids(self, values):
        self.target_product_ids_json = json.dumps([str(v) for v in (values or [])])

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from tenantsync.services.warehouse.query import OrderBy, QuerySpec


@dataclass(frozen=True)
class SourceDefinition:
    source: str
    model_type: str
    # dataset.table in the warehouse.
    table: str
    # Record field -> warehouse column.
    mapping: dict[str, str]
    # Columns with a stable order so LIMIT/OFFSET pages do not shift between calls.
    order_columns: tuple[str, ...]

    @property
    def date_column(self) -> str | None:
        # Date windows filter on the creation or order timestamp; line items carry neither.
        return self.mapping.get("created_at") or self.mapping.get("order_at")

    def query_spec(
        self,
        page_size: int,
        cursor: str | None = None,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> QuerySpec:
        columns = tuple(dict.fromkeys(self.mapping.values()))
        windowed = self.date_column is not None and (date_from is not None or date_to is not None)
        return QuerySpec(
            mode="raw",
            table=self.table,
            columns=columns,
            date_field=self.date_column if windowed else None,
            start_date=date_from if windowed else None,
            end_date=date_to if windowed else None,
            order_by=tuple(OrderBy(field=column) for column in self.order_columns),
            page_size=page_size,
            cursor=cursor,
        )


_DEFINITIONS = [
    SourceDefinition(
        source="kiotviet",
        model_type="customers",
        table="olvboutique_kiotviet.raw_kiotviet_Customers",
        mapping={
            "id": "CusId",
            "name": "Name",
            "phone": "ContactNumber",
            "email": "Email",
            "address": "Address",
            "province": "Province",
            "lifetime_value": "TotalRevenue",
            "created_at": "CreatedDate",
            "tags": "Groups",
        },
        order_columns=("CusId",),
    ),
    SourceDefinition(
        source="haravan",
        model_type="customers",
        table="olvboutique_haravan.raw_hrv_Customers",
        mapping={
            "id": "CusId",
            "first_name": "First_name",
            "last_name": "Last_name",
            "phone": "PhoneFormat",
            "email": "Email",
            "address": "Address1",
            "province": "Province",
            "lifetime_value": "Total_spent",
            "created_at": "Created_at",
            "tags": "Tags",
        },
        order_columns=("CusId",),
    ),
    SourceDefinition(
        source="bluecore",
        model_type="customers",
        table="olvboutique_bcapp.BCApp_MemberInfo",
        mapping={
            "id": "id",
            "name": "Name",
            "phone": "Phone",
            "tags": "Tag",
            "created_at": "CreatedAt",
        },
        order_columns=("id",),
    ),
    SourceDefinition(
        source="kiotviet",
        model_type="products",
        table="olvboutique_kiotviet.bdm_master_data_products",
        mapping={
            "id": "ItemId",
            "barcode": "Barcode",
            "sku": "ItemCode",
            "name": "ItemName",
            "category": "CategoryName",
            "brand": "TradeMark",
            "unit": "Unit",
            "cost_price": "AvgCostPrice",
            "sell_price": "SellPrice",
        },
        order_columns=("ItemId",),
    ),
    SourceDefinition(
        source="shopee",
        model_type="orders",
        table="olvboutique_shopee.shopee_Orders",
        mapping={
            "order_key": "order_sn",
            "order_at": "create_time",
            "status": "order_status",
            "customer_name": "buyer_username",
            "customer_phone": "recipient_address_phone",
            "gross_revenue": "total_amount",
            "net_revenue": "escrow_amount",
            "payment_method": "payment_method",
        },
        order_columns=("order_sn",),
    ),
    SourceDefinition(
        source="lazada",
        model_type="orders",
        table="olvboutique_lazada.lazada_Orders",
        mapping={
            "order_key": "order_id",
            "order_at": "created_at",
            "status": "statuses",
            "customer_name": "customer_first_name",
            "gross_revenue": "price",
            "payment_method": "payment_method",
        },
        order_columns=("order_id",),
    ),
    SourceDefinition(
        source="tiktok",
        model_type="orders",
        table="olvboutique_tiktokshop.tiktok_Orders",
        mapping={
            "order_key": "id",
            "order_at": "create_time",
            "status": "status",
            "gross_revenue": "paid_amount",
            "payment_method": "payment_method_name",
        },
        order_columns=("id",),
    ),
    SourceDefinition(
        source="tiki",
        model_type="orders",
        table="olvboutique_tiki.tiki_Orders",
        mapping={
            "order_key": "code",
            "order_at": "created_at",
            "status": "status",
            "customer_name": "billing_full_name",
            "gross_revenue": "grand_total",
            "payment_method": "payment_method",
        },
        order_columns=("code",),
    ),
    SourceDefinition(
        source="kiotviet",
        model_type="orders",
        table="olvboutique_kiotviet.raw_kiotviet_Orders",
        mapping={
            "order_key": "Id",
            "order_at": "PurchaseDate",
            "status": "Status",
            "customer_name": "CustomerName",
            "branch_code": "BranchId",
            "gross_revenue": "Total",
            "discount": "Discount",
            "payment_method": "PaymentMethodStr",
        },
        order_columns=("Id",),
    ),
    SourceDefinition(
        source="shopee",
        model_type="order_items",
        table="olvboutique_shopee.shopee_OrderItems",
        mapping={
            "order_key": "order_sn",
            "item_id": "item_id",
            "sku": "item_sku",
            "name": "item_name",
            "quantity": "model_quantity_purchased",
            "unit_price": "model_original_price",
            "total": "model_discounted_price",
        },
        order_columns=("order_sn", "item_id"),
    ),
    SourceDefinition(
        source="lazada",
        model_type="order_items",
        table="olvboutique_lazada.lazada_OrderItems",
        mapping={
            "order_key": "order_id",
            "item_id": "order_item_id",
            "sku": "sku",
            "name": "name",
            "quantity": "quantity",
            "unit_price": "item_price",
            "discount": "voucher_amount",
            "total": "paid_price",
        },
        order_columns=("order_item_id",),
    ),
    SourceDefinition(
        source="tiktok",
        model_type="order_items",
        table="olvboutique_tiktokshop.tiktok_OrderItems",
        mapping={
            "order_key": "order_id",
            "item_id": "id",
            "sku": "seller_sku",
            "name": "product_name",
            "quantity": "quantity",
            "unit_price": "original_price",
            "discount": "platform_discount",
            "total": "sale_price",
        },
        order_columns=("id",),
    ),
    SourceDefinition(
        source="kiotviet",
        model_type="order_items",
        table="olvboutique_kiotviet.raw_kiotviet_OrderDetails",
        mapping={
            "order_key": "OrderId",
            "item_id": "ProductId",
            "sku": "ProductCode",
            "name": "ProductName",
            "quantity": "Quantity",
            "unit_price": "Price",
            "discount": "Discount",
            "total": "SubTotal",
        },
        order_columns=("OrderId", "ProductId"),
    ),
]

CATALOG: dict[tuple[str, str], SourceDefinition] = {
    (definition.source, definition.model_type): definition for definition in _DEFINITIONS
}


def get_source(source: str, model_type: str) -> SourceDefinition | None:
    return CATALOG.get((source, model_type))


def list_sources(model_type: str | None = None) -> list[SourceDefinition]:
    return [
        definition
        for definition in _DEFINITIONS
        if model_type is None or definition.model_type == model_type
    ]

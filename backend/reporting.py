from calendar import month_abbr
from datetime import datetime
from typing import Dict, List

from pymongo.collection import Collection
from pymongo.database import Database

from .orders import OrderStatus


def monthly_orders_sales(orders: Collection, year: int) -> List[Dict]:
    start = datetime(year, 1, 1)
    end = datetime(year + 1, 1, 1)
    pipeline = [
        {"$match": {"createdAt": {"$gte": start, "$lt": end}}},
        {
            "$group": {
                "_id": {"$month": "$createdAt"},
                "orders": {"$sum": 1},
                "sales": {"$sum": "$totalAmount"},
            }
        },
    ]
    by_month = {row["_id"]: row for row in orders.aggregate(pipeline)}

    report = []
    for month in range(1, 13):
        row = by_month.get(month) or {}
        report.append(
            {
                "month": month_abbr[month],
                "orders": int(row.get("orders") or 0),
                "sales": round(float(row.get("sales") or 0), 2),
            }
        )
    return report


def orders_by_status(orders: Collection) -> List[Dict]:
    counts = {
        row["_id"]: row["count"]
        for row in orders.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
    }
    return [
        {"status": status.value, "count": int(counts.get(status.value, 0))}
        for status in OrderStatus
    ]


def products_by_category(products: Collection) -> List[Dict]:
    rows = products.aggregate(
        [
            {"$unwind": "$categories"},
            {"$group": {"_id": "$categories", "count": {"$sum": 1}}},
        ]
    )
    report = [{"category": row["_id"], "count": int(row["count"])} for row in rows]
    report.sort(key=lambda entry: (-entry["count"], str(entry["category"])))
    return report


def summary(db: Database) -> Dict[str, int]:
    return {
        "totalProducts": db.products.count_documents({"isActive": True}),
        "totalOrders": db.orders.count_documents({}),
        "totalUsers": db.users.count_documents({}),
    }

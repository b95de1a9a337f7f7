"""Product attribute and variant handling.

Products carry two attribute maps: the fixed schema (``colors``, ``sizes``,
``brand``, ``material``) and an open ``additionalAttributes`` mapping. Both
accept a scalar or a list from clients and are stored as lists of strings.
The merged view lets fixed keys win over additional keys of the same name.
"""
import re
from typing import Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection

from .database import serialize_document
from .errors import NotFound, ValidationError

FIXED_ATTRIBUTE_KEYS = ("colors", "sizes", "brand", "material")
PRICE_TIERS = ("small", "medium", "large", "xlarge")
ATTRIBUTE_TYPES = ("color", "size", "brand", "material")

VARIANT_SUMMARY_FIELDS = ("_id", "name", "image", "prices", "stockQuantity", "isActive")

_TRAILING_DIGITS = re.compile(r"[0-9]+$")


def is_empty_value(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def as_value_list(value) -> List[str]:
    if is_empty_value(value):
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if not is_empty_value(item)]
    return [str(value).strip()]


def normalize_attributes(
    raw_attributes: Optional[Dict], raw_additional: Optional[Dict]
) -> Tuple[Dict[str, List[str]], Dict[str, List[str]]]:
    if raw_attributes is not None and not isinstance(raw_attributes, dict):
        raise ValidationError("Attributes must be an object.")
    if raw_additional is not None and not isinstance(raw_additional, dict):
        raise ValidationError("Additional attributes must be an object.")

    fixed: Dict[str, List[str]] = {}
    reclassified: Dict[str, List[str]] = {}

    for key, value in (raw_attributes or {}).items():
        if is_empty_value(value):
            continue
        if key in FIXED_ATTRIBUTE_KEYS:
            fixed[key] = as_value_list(value)
        else:
            reclassified[str(key)] = as_value_list(value)

    additional: Dict[str, List[str]] = {}
    for key, value in (raw_additional or {}).items():
        if is_empty_value(value):
            continue
        additional[str(key)] = as_value_list(value)

    # An explicit additional value beats one reclassified out of attributes.
    for key, values in reclassified.items():
        additional.setdefault(key, values)

    return fixed, additional


def merged_view(product_document: Optional[Dict]) -> Dict[str, List[str]]:
    if not product_document:
        return {}
    fixed = product_document.get("attributes") or {}
    additional = product_document.get("additionalAttributes") or {}
    merged: Dict[str, List[str]] = {}
    merged.update(additional)
    merged.update(fixed)
    return merged


def base_name(name: str) -> str:
    return _TRAILING_DIGITS.sub("", name or "")


def normalize_prices(raw_prices) -> Dict[str, float]:
    if raw_prices is None:
        return {}
    if not isinstance(raw_prices, dict):
        raise ValidationError("Prices must be an object keyed by size tier.")
    prices: Dict[str, float] = {}
    for tier in PRICE_TIERS:
        value = raw_prices.get(tier)
        if is_empty_value(value):
            continue
        try:
            numeric = round(float(value), 2)
        except (TypeError, ValueError):
            raise ValidationError(f"Price for {tier} must be a valid number.")
        if numeric < 0:
            raise ValidationError(f"Price for {tier} must not be negative.")
        prices[tier] = numeric
    return prices


def normalize_stock_quantity(value) -> int:
    if is_empty_value(value):
        raise ValidationError("Stock quantity is required.")
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Stock quantity must be a whole number.")
    if quantity < 0:
        raise ValidationError("Stock quantity must not be negative.")
    return quantity


def normalize_categories(value) -> List[str]:
    categories: List[str] = []
    for label in as_value_list(value):
        if label not in categories:
            categories.append(label)
    return categories


def build_product_document(
    payload: Dict, partial: bool = False, existing_additional: Optional[Dict] = None
) -> Dict:
    """Turn a client product payload into the stored shape.

    With ``partial`` only the fields present in the payload are returned,
    which is what product updates ``$set``. ``existing_additional`` is the
    stored additional map, needed when an update sends attributes alone.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Product payload must be an object.")

    document: Dict = {}

    if "name" in payload or not partial:
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValidationError("A product name is required.")
        document["name"] = name

    if "stockQuantity" in payload or not partial:
        document["stockQuantity"] = normalize_stock_quantity(payload.get("stockQuantity"))

    if "prices" in payload or not partial:
        document["prices"] = normalize_prices(payload.get("prices"))

    if "categories" in payload or not partial:
        document["categories"] = normalize_categories(payload.get("categories"))

    for text_field in ("image", "description", "customizationDescription"):
        if text_field in payload or not partial:
            document[text_field] = str(payload.get(text_field) or "").strip()

    for flag_field, default in (("isCustomizable", False), ("isActive", True)):
        if flag_field in payload:
            document[flag_field] = bool(payload.get(flag_field))
        elif not partial:
            document[flag_field] = default

    if "attributes" in payload or "additionalAttributes" in payload or not partial:
        fixed, additional = normalize_attributes(
            payload.get("attributes"), payload.get("additionalAttributes")
        )
        if "attributes" in payload or not partial:
            document["attributes"] = fixed
        if "additionalAttributes" in payload or not partial:
            document["additionalAttributes"] = additional
        elif additional:
            # attributes-only update: fold reclassified keys into the stored map
            document["additionalAttributes"] = {**(existing_additional or {}), **additional}

    return document


def serialize_product(product_document: Optional[Dict]) -> Dict:
    if not product_document:
        return {}
    serialized = serialize_document(product_document)
    serialized.setdefault("attributes", {})
    serialized.setdefault("additionalAttributes", {})
    serialized["allAttributes"] = merged_view(serialized)
    return serialized


def summarize_variant(product_document: Dict) -> Dict:
    return serialize_document(
        {field: product_document.get(field) for field in VARIANT_SUMMARY_FIELDS}
    )


def resolve_variants(products: Collection, name: str) -> Dict:
    family = base_name(name)
    query = {"name": {"$regex": f"^{re.escape(family)}", "$options": "i"}}
    variants = list(
        products.find(query).sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
    )
    if not variants:
        raise NotFound("No product variants found.")

    color_to_variants: Dict[str, List[Dict]] = {}
    available_colors: List[str] = []
    for variant in variants:
        colors = (variant.get("attributes") or {}).get("colors") or []
        summary = summarize_variant(variant)
        for color in colors:
            if color not in color_to_variants:
                color_to_variants[color] = []
                available_colors.append(color)
            color_to_variants[color].append(summary)

    return {
        "baseName": family,
        "colorToVariants": color_to_variants,
        "colorToProductMap": color_to_variants,
        "allAvailableColors": available_colors,
        "allVariants": [serialize_product(variant) for variant in variants],
    }


def resolve_exact_variant(products: Collection, name: str, color: str) -> Dict:
    matches = list(
        products.find({"name": name, "attributes.colors": color})
        .sort("_id", ASCENDING)
        .limit(1)
    )
    if not matches:
        raise NotFound("Product variant not found.")
    return matches[0]

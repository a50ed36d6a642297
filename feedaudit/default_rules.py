from __future__ import annotations

from typing import Any

from feedaudit.store import SqlStore


REQUIRED_FIELDS_CATEGORY = "Required Fields"

# (field, rule name, what the description says is checked, criticality)
_REQUIRED_FIELDS: list[tuple[str, str, str, str]] = [
    ("id", "ID Check", "the product ID is not empty", "critical"),
    ("title", "Title Check", "the product title is not empty", "critical"),
    ("description", "Description Check", "the product description is not empty", "critical"),
    ("link", "Link Check", "the product link is not empty", "critical"),
    ("image_link", "Image Link Check", "the product image link is not empty", "critical"),
    ("additional_image_link", "Additional Image Link Check", "the additional image link is not empty", "critical"),
    ("availability", "Availability Check", "the product availability is specified", "critical"),
    ("price", "Price Check", "the product price is not empty", "critical"),
    ("brand", "Brand Check", "the product brand is not empty", "critical"),
    ("gtin", "GTIN Check", "the product GTIN is not empty", "critical"),
    ("google_product_category", "Google Product Category Check", "the Google product category is specified", "critical"),
    ("product_type", "Product Type Check", "the product type is specified", "critical"),
    ("item_group_id", "Item Group ID Check", "the item group ID is not empty", "critical"),
    ("color", "Color Check", "the product color is specified", "critical"),
    ("size", "Size Check", "the product size is specified", "critical"),
    ("material", "Material Check", "the product material is specified", "critical"),
    ("age_group", "Age Group Check", "the age group is specified", "critical"),
    ("gender", "Gender Check", "the gender is specified", "critical"),
    ("product_highlight", "Product Highlight Check", "product highlights are specified", "warning"),
]


DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "name": name,
        "description": f"Verifies that {checked}",
        "category": REQUIRED_FIELDS_CATEGORY,
        "condition": {"type": "notEmpty", "field": field},
        "criticality": criticality,
    }
    for field, name, checked, criticality in _REQUIRED_FIELDS
]


def seed_default_rules(store: SqlStore) -> list[dict[str, Any]]:
    """Replace the rule catalogue with the default required-field rules."""
    return store.replace_rules(DEFAULT_RULES)

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping


@dataclass(frozen=True)
class FieldLabels:
    en: str
    fr: str


FIELD_VOCABULARY: dict[str, FieldLabels] = {
    "id": FieldLabels("id", "Identifiant"),
    "title": FieldLabels("title", "Titre"),
    "description": FieldLabels("description", "Description"),
    "link": FieldLabels("link", "Lien"),
    "image_link": FieldLabels("image_link", "Lien image"),
    "additional_image_link": FieldLabels("additional_image_link", "Lien image supplémentaire"),
    "availability": FieldLabels("availability", "Disponibilité"),
    "price": FieldLabels("price", "Prix"),
    "brand": FieldLabels("brand", "Marque"),
    "gtin": FieldLabels("gtin", "GTIN"),
    "mpn": FieldLabels("mpn", "MPN"),
    "google_product_category": FieldLabels("google_product_category", "Catégorie de produit Google"),
    "product_type": FieldLabels("product_type", "Type de produit"),
    "condition": FieldLabels("condition", "État"),
    "item_group_id": FieldLabels("item_group_id", "Identifiant de groupe d'articles"),
    "custom_label_0": FieldLabels("custom_label_0", "Étiquette personnalisée 0"),
    "custom_label_1": FieldLabels("custom_label_1", "Étiquette personnalisée 1"),
    "custom_label_2": FieldLabels("custom_label_2", "Étiquette personnalisée 2"),
    "custom_label_3": FieldLabels("custom_label_3", "Étiquette personnalisée 3"),
    "custom_label_4": FieldLabels("custom_label_4", "Étiquette personnalisée 4"),
    "mobile_link": FieldLabels("mobile_link", "URL mobile"),
    "multipack": FieldLabels("multipack", "Multipack"),
    "is_bundle": FieldLabels("is_bundle", "Lot"),
    "availability_date": FieldLabels("availability_date", "Date de disponibilité"),
    "expiration_date": FieldLabels("expiration_date", "Date d'expiration"),
    "unit_pricing_measure": FieldLabels("unit_pricing_measure", "Unité de prix"),
    "unit_pricing_base_measure": FieldLabels("unit_pricing_base_measure", "Base de l'unité de prix"),
    "min_handling_time": FieldLabels("min_handling_time", "Quantité minimale de commande"),
    "max_handling_time": FieldLabels("max_handling_time", "Quantité maximale de commande"),
    "shipping": FieldLabels("shipping", "Frais d'expédition"),
    "shipping_weight": FieldLabels("shipping_weight", "Poids du colis"),
    "shipping_length": FieldLabels("shipping_length", "Longueur du colis"),
    "shipping_width": FieldLabels("shipping_width", "Largeur du colis"),
    "shipping_height": FieldLabels("shipping_height", "Hauteur du colis"),
    "shipping_label": FieldLabels("shipping_label", "Pays d'origine"),
    "tax": FieldLabels("tax", "Taxe"),
    "identifier_exists": FieldLabels("identifier_exists", "Code produit unique"),
    "color": FieldLabels("color", "Couleur"),
    "size": FieldLabels("size", "Taille"),
    "pattern": FieldLabels("pattern", "Motif"),
    "material": FieldLabels("material", "Matière"),
    "age_group": FieldLabels("age_group", "Groupe cible"),
    "gender": FieldLabels("gender", "Sexe"),
    "size_system": FieldLabels("size_system", "Taille du système"),
    "size_type": FieldLabels("size_type", "Type de taille"),
    "product_highlight": FieldLabels("product_highlight", "Point fort du produit"),
}

ID_FIELD = "id"


def field_names() -> list[str]:
    return list(FIELD_VOCABULARY)


def french_label(field: str) -> str:
    labels = FIELD_VOCABULARY.get(field)
    return labels.fr if labels else field


def canonical_for_label(label: str) -> str | None:
    for canonical, labels in FIELD_VOCABULARY.items():
        if labels.fr == label or labels.en == label:
            return canonical
    return None


def normalize_field_name(name: str) -> str | None:
    """Return the canonical identifier for ``name`` given in either language."""
    if name in FIELD_VOCABULARY:
        return name
    return canonical_for_label(name)


class FieldResolver:
    def __init__(self, vocabulary: Mapping[str, FieldLabels] | None = None) -> None:
        self._vocabulary = dict(vocabulary if vocabulary is not None else FIELD_VOCABULARY)
        self._by_label: dict[str, str] = {}
        for canonical, labels in self._vocabulary.items():
            self._by_label.setdefault(labels.fr, canonical)
            self._by_label.setdefault(labels.en, canonical)

    def candidates(self, field: str) -> tuple[str, ...]:
        keys = [field]
        labels = self._vocabulary.get(field)
        if labels is None:
            canonical = self._by_label.get(field)
            if canonical is not None:
                labels = self._vocabulary[canonical]
                keys.append(canonical)
        if labels is not None:
            keys.extend([labels.en, labels.fr])
        return tuple(dict.fromkeys(keys))

    def lookup(self, record: Mapping[str, str | None], field: str, candidates: tuple[str, ...] | None = None) -> str:
        for key in candidates or self.candidates(field):
            value = record.get(key)
            if value is not None:
                return str(value)
        return ""

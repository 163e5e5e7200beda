"""
catalog.py — Catalog Resolver

Turns cart items into priced line items with one bulk read per catalog table.
A missing product aborts the whole order. A missing protein is simply not applied.
"""

import logging
from typing import List, Sequence

from .errors import NotFound, ValidationFailed
from .models import CartItem, LineItem
from .store import CatalogReader

log = logging.getLogger(__name__)


class CatalogResolver:
    def __init__(self, reader: CatalogReader):
        self.reader = reader

    def resolve(self, items: Sequence[CartItem]) -> List[LineItem]:
        """
        Resolves cart items against the catalog.

        Args:
            items (Sequence[CartItem]): Non-empty cart, in display order.

        Returns:
            List[LineItem]: One line item per cart item, same order, with name and price
            snapshots. Unit price = product price + prices of all resolved proteins.

        Raises:
            ValidationFailed: If the cart is empty.
            NotFound: If any referenced product does not exist.
        """
        if not items:
            raise ValidationFailed("Order items are required", detail={"items": "At least one item is required"})

        product_ids = {item.product for item in items}
        protein_ids = {pid for item in items for pid in item.proteins}

        products = {p.id: p for p in self.reader.find_products_by_ids(product_ids)}
        proteins = {p.id: p for p in self.reader.find_proteins_by_ids(protein_ids)}

        line_items = []
        for item in items:
            product = products.get(item.product)
            if product is None:
                raise NotFound(f"Product {item.product} not found", detail={"product": item.product})

            applied = [proteins[pid] for pid in item.proteins if pid in proteins]
            skipped = [pid for pid in item.proteins if pid not in proteins]
            if skipped:
                log.info(f"Ignoring unknown proteins {skipped} for product {product.id}.")

            line_items.append(LineItem(
                product=product.id,
                productName=product.name,
                quantity=item.quantity,
                price=product.price + sum(p.price for p in applied),
                proteins=[p.id for p in applied],
                proteinNames=[p.name for p in applied],
            ))
        return line_items

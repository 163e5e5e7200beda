"""
seed.py — Catalog Seeding

Replaces the catalog with the house menu. Orders are left untouched, their line
items carry their own name and price snapshots.

Usage:
    python -m order_service.seed        (uses DATABASE_URL)
"""

from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker

from . import config
from .logging_config import get_logger, setup_logging
from .models import ProductCategory
from .store import ProductRow, ProteinRow, create_session_factory, product_proteins

log = get_logger(__name__)

FOOD_ITEMS = [
    {
        "name": "Jollof Rice",
        "description": "Authentic Nigerian long-grain rice parboiled in a rich, spicy tomato reduction.",
        "price": 4500,
        "image": "/jollof.jpeg",
        "rating": 4.9,
        "calories": 550,
        "tags": ["Legendary", "Spicy"],
    },
    {
        "name": "Fried Rice",
        "description": "Savory seasoned rice stir-fried with sweet peas, carrots, and aromatic local spices.",
        "price": 4500,
        "image": "/fried.jpeg",
        "rating": 4.8,
        "calories": 520,
        "tags": ["Signature"],
    },
    {
        "name": "Mixed Rice",
        "description": 'A perfect "sync" of both worlds. A half-and-half portion of our Jollof and Fried Rice.',
        "price": 5500,
        "image": "/jollofandfried.jpeg",
        "rating": 5.0,
        "calories": 540,
        "tags": ["Best Value"],
    },
]

PROTEIN_OPTIONS = [
    {"name": "Grilled Chicken", "price": 3500},
    {"name": "Spicy Beef", "price": 4000},
    {"name": "Fried Fish", "price": 6500},
]


def seed_catalog(session_factory: sessionmaker):
    """
    Deletes all products and proteins and inserts the house menu.
    Every grain dish is offered with every protein.

    Returns:
        tuple[int, int]: Number of products and proteins written.
    """
    with session_factory() as session, session.begin():
        session.execute(delete(product_proteins))
        session.execute(delete(ProductRow))
        session.execute(delete(ProteinRow))

        proteins = [ProteinRow(**option) for option in PROTEIN_OPTIONS]
        products = [
            ProductRow(category=ProductCategory.GRAINS.value, proteins=list(proteins), **item)
            for item in FOOD_ITEMS
        ]
        session.add_all(proteins + products)

    log.info(f"[CATALOG] Seeded {len(products)} products and {len(proteins)} proteins.")
    return len(products), len(proteins)


if __name__ == "__main__":
    setup_logging()
    seed_catalog(create_session_factory(config.DATABASE_URL))

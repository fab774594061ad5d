"""
Catalog Loader - reads the product CSV into Product objects.

Columns: product_id, name, price, stock, category, tags, rating.
Tags are '|'-separated; an empty rating means unrated.
"""
from pathlib import Path

import pandas as pd

from ..engine.models import Product
from ..utils.logger import get_logger

logger = get_logger("data.catalog")

REQUIRED_COLUMNS = ['product_id', 'name', 'price']


def load_catalog(path: Path) -> list[Product]:
    """Load products from CSV. A missing file yields an empty catalog."""
    path = Path(path)
    if not path.exists():
        logger.warning(f"Catalog file not found: {path}")
        return []

    df = pd.read_csv(path, dtype={'product_id': str, 'tags': str})
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Catalog {path} is missing columns: {', '.join(missing)}")

    df['product_id'] = df['product_id'].str.strip()
    df = df.dropna(subset=['product_id'])

    duplicates = int(df['product_id'].duplicated().sum())
    if duplicates:
        logger.warning(f"Dropping {duplicates} duplicate product ids from {path.name}")
        df = df.drop_duplicates('product_id', keep='first')

    products = []
    for _, row in df.iterrows():
        tags = row.get('tags')
        rating = row.get('rating')
        stock = row.get('stock')
        category = row.get('category')
        products.append(Product(
            id=row['product_id'],
            name=row['name'],
            price=float(row['price']),
            stock=int(stock) if pd.notna(stock) else 0,
            category=category if pd.notna(category) else 'general',
            tags=[t.strip() for t in tags.split('|') if t.strip()] if pd.notna(tags) else [],
            rating=float(rating) if pd.notna(rating) else None,
        ))
    return products

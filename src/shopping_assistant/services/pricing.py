"""
Pricing - order totals and cart analytics.

Totals are computed on current (discounted) unit prices. Analytics use a
pandas frame of the cart lines.
"""
from typing import Optional

import pandas as pd

from ..config.settings import Settings, get_settings
from ..engine.models import Cart

PRICE_BANDS = [0, 50, 200, float('inf')]
PRICE_BAND_LABELS = ['low', 'medium', 'high']


def price_breakdown(cart: Cart, settings: Optional[Settings] = None) -> dict:
    """Subtotal, tax, shipping and grand total for a cart."""
    settings = settings or get_settings()

    subtotal = round(cart.total, 2)
    tax = round(subtotal * settings.tax_rate, 2)
    free_shipping = subtotal >= settings.free_shipping_threshold
    shipping = 0.0 if free_shipping or cart.is_empty else settings.shipping_cost

    return {
        'original_subtotal': round(cart.subtotal, 2),
        'discount': round(cart.total_discount, 2),
        'subtotal': subtotal,
        'tax': tax,
        'shipping': shipping,
        'total': round(subtotal + tax + shipping, 2),
        'free_shipping_eligible': free_shipping,
    }


def cart_frame(cart: Cart) -> pd.DataFrame:
    """One row per cart line."""
    return pd.DataFrame(
        [
            {
                'product_id': item.product_id,
                'name': item.name,
                'category': item.category,
                'price': item.price,
                'quantity': item.quantity,
            }
            for item in cart.items
        ],
        columns=['product_id', 'name', 'category', 'price', 'quantity'],
    )


def cart_analytics(cart: Cart) -> dict:
    """
    Category distribution (units), units per price band, average unit price
    and the most expensive / cheapest lines.
    """
    df = cart_frame(cart)
    analytics = {
        'total_items': int(df['quantity'].sum()) if not df.empty else 0,
        'unique_items': len(df),
        'category_distribution': {},
        'price_ranges': {label: 0 for label in PRICE_BAND_LABELS},
        'average_item_price': 0.0,
        'most_expensive_item': None,
        'cheapest_item': None,
    }
    if df.empty:
        return analytics

    analytics['category_distribution'] = {
        category: int(units) for category, units in df.groupby('category', sort=False)['quantity'].sum().items()
    }

    df['band'] = pd.cut(df['price'], bins=PRICE_BANDS, labels=PRICE_BAND_LABELS, right=False)
    band_units = df.groupby('band', observed=False)['quantity'].sum()
    analytics['price_ranges'] = {str(band): int(units) for band, units in band_units.items()}

    line_totals = df['price'] * df['quantity']
    analytics['average_item_price'] = float(line_totals.sum() / df['quantity'].sum())

    # idxmax / idxmin keep the first line on ties
    analytics['most_expensive_item'] = cart.items[int(df['price'].idxmax())].to_dict()
    analytics['cheapest_item'] = cart.items[int(df['price'].idxmin())].to_dict()
    return analytics

"""In-app product catalog.

One auto-renewing subscription plus a fixed set of consumable token packs.
Every entitlement decision (token grant size, subscription period, whether a
webhook is monitored) is looked up here.
"""

from dataclasses import dataclass

from entitlements import config

settings = config.get_settings()


@dataclass(frozen=True)
class Product:
    """A purchasable product and what it grants."""
    product_id: str
    token_grant: int
    is_subscription: bool
    period_days: int | None = None  # None for consumables


SUBSCRIPTION = Product(
    product_id=settings.SUBSCRIPTION_PRODUCT_ID,
    token_grant=settings.SUBSCRIPTION_TOKEN_GRANT,
    is_subscription=True,
    period_days=settings.SUBSCRIPTION_PERIOD_DAYS,
)

# Consumable token packs (product id -> tokens credited)
TOKEN_PACKS = {
    "25K_tokens": 25000,
    "100K_tokens": 100000,
    "tokens_250k": 250000,
    "500K_tokens": 500000,
}

PRODUCTS: dict[str, Product] = {
    SUBSCRIPTION.product_id: SUBSCRIPTION,
    **{
        product_id: Product(product_id=product_id, token_grant=amount, is_subscription=False)
        for product_id, amount in TOKEN_PACKS.items()
    },
}


def get_product(product_id: str | None) -> Product | None:
    """Look up a product, returning None for anything not sold in-app."""
    if not product_id:
        return None
    return PRODUCTS.get(product_id)


def is_monitored_subscription(product_id: str | None) -> bool:
    """Whether S2S notifications for this product drive entitlement state."""
    return product_id == SUBSCRIPTION.product_id

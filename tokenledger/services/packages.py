"""
Token Packages - Static catalog of purchasable token bundles.
"""

from decimal import Decimal

from tokenledger.exceptions import PackageNotFoundError
from tokenledger.models.domain import TokenPackage

TOKEN_PACKAGES: tuple[TokenPackage, ...] = (
    TokenPackage(
        id="starter",
        name="Starter Pack",
        tokens=35_000,
        price=Decimal("10.00"),
        original_value=Decimal("7.50"),
        savings="5%",
        description="Perfect for occasional chart analysis",
        price_id="price_1SAoZxRqFaHWPtRlxbZUZAuq",
    ),
    TokenPackage(
        id="standard",
        name="Standard Pack",
        tokens=175_000,
        price=Decimal("50.00"),
        original_value=Decimal("45.00"),
        savings="10%",
        description="Great for regular traders",
        price_id="price_1SAoZvRqFaHWPtRl5rDJs0Uu",
    ),
    TokenPackage(
        id="premium",
        name="Premium Pack",
        tokens=350_000,
        price=Decimal("100.00"),
        original_value=Decimal("90.00"),
        savings="20%",
        description="Best value for power users",
        price_id="price_1SAoZsRqFaHWPtRlgWZbHp6T",
    ),
)


def list_packages() -> list[TokenPackage]:
    """All packages, cheapest first."""
    return list(TOKEN_PACKAGES)


def get_package(package_id: str) -> TokenPackage:
    """
    Look up a package by id.

    Raises:
        PackageNotFoundError: unknown package id
    """
    for package in TOKEN_PACKAGES:
        if package.id == package_id:
            return package
    raise PackageNotFoundError(package_id)

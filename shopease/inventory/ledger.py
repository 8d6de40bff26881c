"""
Inventory Ledger: seul composant autorisé à modifier Product.stock.
- lock_products: verrouille les lignes produits (SELECT ... FOR UPDATE), triées par id.
- reserve: décrément conditionnel (stock >= qty), sinon InsufficientStock sans écriture.
- release: incrément; l'idempotence (quand l'appeler) est la responsabilité de l'appelant.
Toutes les opérations s'exécutent dans la transaction de l'appelant, sans retry.
"""
from typing import Dict, Iterable
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from shopease.errors import InsufficientStock, ProductUnavailable
from shopease.inventory.models import Product

logger = logging.getLogger(__name__)


def lock_products(db: Session, product_ids: Iterable[int]) -> Dict[int, Product]:
    """
    Verrouille les lignes des produits référencés et les retourne {id: Product}.
    - Ordre croissant des ids: deux commandes concurrentes prennent les verrous dans le même ordre.
    - populate_existing: les valeurs lues sont celles de la ligne verrouillée, pas du cache de session.
    """
    ids = sorted({int(i) for i in product_ids})
    if not ids:
        return {}
    stmt = (
        select(Product)
        .where(Product.id.in_(ids))
        .order_by(Product.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {p.id: p for p in db.execute(stmt).scalars()}


def reserve(db: Session, product_id: int, quantity: int) -> int:
    """
    Réserve `quantity` unités (décrément atomique) et retourne le stock restant.
    - La ligne doit déjà être verrouillée par lock_products dans la même transaction.
    - Lève InsufficientStock si le stock résultant serait négatif (aucune mutation).
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    result = db.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        product = db.get(Product, product_id, populate_existing=True)
        if product is None:
            raise ProductUnavailable(product_id)
        raise InsufficientStock(product_id, available=product.stock, requested=quantity, product_name=product.name)
    remaining = db.execute(select(Product.stock).where(Product.id == product_id)).scalar_one()
    logger.debug("Stock reserved product=%s qty=%s remaining=%s", product_id, quantity, remaining)
    return remaining


def release(db: Session, product_id: int, quantity: int) -> None:
    """
    Restitue `quantity` unités au stock.
    - Lève LookupError si le produit n'existe plus (l'appelant journalise et continue).
    """
    if quantity <= 0:
        return
    result = db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise LookupError(f"Produit {product_id} introuvable pour restitution")
    logger.info("Stock released product=%s qty=%s", product_id, quantity)

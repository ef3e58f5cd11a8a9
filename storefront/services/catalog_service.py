from typing import Dict, List, Optional
from sqlalchemy import or_
from ..models.product import Product
from ..models.category import Category
from ..utils.pagination import normalize_paging
from ..utils.dto import to_product_dto


class CatalogService:
    """Catalog queries: product listing, detail and the low-stock report."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def list_products(
        self,
        *,
        query: Optional[str] = None,
        category: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict:
        """Return dict: { items: [ProductDTO], page, page_size, total }"""
        p, ps, offset = normalize_paging(page, page_size)
        with self._session_factory() as session:
            q = session.query(Product).filter(Product.is_active.is_(True))
            if query:
                like = f"%{query}%"
                q = q.filter(
                    or_(
                        Product.name.ilike(like),
                        Product.description.ilike(like),
                        Product.sku.ilike(like),
                    )
                )
            if category:
                q = (
                    q.join(Category, Category.id == Product.category_id, isouter=True)
                    .filter(or_(Category.slug == category, Product.category_id == category))
                )
            total = q.count()
            rows = (
                q.order_by(Product.sort_order.desc(), Product.created_at.desc())
                .offset(offset)
                .limit(ps)
                .all()
            )
            return {"items": [to_product_dto(r) for r in rows], "page": p, "page_size": ps, "total": total}

    def get_product(self, product_id: str) -> dict:
        with self._session_factory() as session:
            r = (
                session.query(Product)
                .filter(Product.id == product_id, Product.is_active.is_(True))
                .first()
            )
            return to_product_dto(r) if r else {}

    def low_stock_products(self) -> List[Dict]:
        """Active products at or below their restock threshold, emptiest first."""
        with self._session_factory() as session:
            rows = (
                session.query(Product)
                .filter(Product.is_active.is_(True), Product.stock <= Product.low_stock_threshold)
                .order_by(Product.stock.asc(), Product.name.asc())
                .all()
            )
            return [dict(to_product_dto(r), low_stock_threshold=r.low_stock_threshold) for r in rows]

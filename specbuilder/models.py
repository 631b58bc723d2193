"""Data models for products, specifications and users.

Every record coming from an external source goes through ``from_dict``,
which raises ``ResponseFormatError`` instead of letting a missing field
surface later as ``None``.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from specbuilder.errors import ResponseFormatError

__all__ = [
    "ProductImage",
    "Product",
    "ProductPage",
    "Relation",
    "Specification",
    "SpecificationWithProduct",
    "User",
    "parse_products",
]


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ResponseFormatError(f"Expected an object for {what}, got {type(data).__name__}")
    return data


def _require_str(data: Mapping[str, Any], key: str, what: str) -> str:
    value = data.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str) or not value:
        raise ResponseFormatError(f"{what} is missing required field '{key}'")
    return value


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class ProductImage:
    url: str


@dataclass(frozen=True)
class Product:
    """One catalog item from the Shopify store, keyed by ``handle``."""

    id: str
    handle: str
    title: str
    vendor: str = ""
    brand: Optional[str] = None
    featured_image: Optional[ProductImage] = None
    online_store_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Product":
        data = _require_mapping(data, "product")
        image = data.get("featuredImage")
        featured_image = None
        if image is not None:
            image = _require_mapping(image, "product image")
            if image.get("url"):
                featured_image = ProductImage(url=str(image["url"]))
        return cls(
            id=_require_str(data, "id", "Product"),
            handle=_require_str(data, "handle", "Product"),
            title=str(data.get("title") or ""),
            vendor=str(data.get("vendor") or ""),
            brand=_optional_str(data, "brand"),
            featured_image=featured_image,
            online_store_url=_optional_str(data, "onlineStoreUrl"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "handle": self.handle,
            "title": self.title,
            "vendor": self.vendor,
            "brand": self.brand,
            "featuredImage": {"url": self.featured_image.url} if self.featured_image else None,
            "onlineStoreUrl": self.online_store_url,
        }


def parse_products(data: Any) -> List[Product]:
    """Parse a product list, accepting either a bare list or ``{"products": [...]}``."""
    if isinstance(data, Mapping) and "products" in data:
        data = data["products"]
    if not isinstance(data, list):
        raise ResponseFormatError(f"Expected a list of products, got {type(data).__name__}")
    return [Product.from_dict(item) for item in data]


@dataclass(frozen=True)
class ProductPage:
    """One page of the paginated product listing."""

    products: Tuple[Product, ...]
    next_cursor: Optional[str] = None
    has_next_page: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "ProductPage":
        data = _require_mapping(data, "product page")
        products = data.get("products")
        if not isinstance(products, list):
            raise ResponseFormatError("Invalid response format from products batch API")
        has_next_page = bool(data.get("hasNextPage"))
        next_cursor = data.get("nextCursor") if has_next_page else None
        return cls(
            products=tuple(Product.from_dict(p) for p in products),
            next_cursor=next_cursor,
            has_next_page=has_next_page,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "products": [p.to_dict() for p in self.products],
            "nextCursor": self.next_cursor,
            "hasNextPage": self.has_next_page,
        }


@dataclass(frozen=True)
class Relation:
    """A ``{id, name}`` lookup entity (brand, grind, tasting note, ...)."""

    id: str
    name: str

    @classmethod
    def from_dict(cls, data: Any) -> "Relation":
        data = _require_mapping(data, "relation")
        return cls(id=_require_str(data, "id", "Relation"), name=str(data.get("name") or ""))

    @classmethod
    def optional(cls, data: Any) -> Optional["Relation"]:
        return None if data is None else cls.from_dict(data)

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name}


# Many-to-many fields and the key each list item wraps its entity in
WRAPPED_RELATIONS = {
    "tasting_notes": "tasting_note",
    "tobacco_types": "tobacco_type",
    "cures": "cure",
}

SINGLE_RELATIONS = (
    "product_type",
    "product_brand",
    "grind",
    "moisture_level",
    "nicotine_level",
    "experience_level",
)


def _unwrap_relations(data: Mapping[str, Any], key: str) -> Tuple[Relation, ...]:
    items = data.get(key) or []
    if not isinstance(items, list):
        raise ResponseFormatError(f"Specification field '{key}' must be a list")
    inner = WRAPPED_RELATIONS[key]
    relations = []
    for item in items:
        item = _require_mapping(item, key)
        relations.append(Relation.from_dict(item.get(inner, item)))
    return tuple(relations)


@dataclass(frozen=True)
class Specification:
    """A user-authored tasting specification for one product."""

    id: str
    shopify_handle: Optional[str] = None
    review: Optional[str] = None
    star_rating: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    product_type: Optional[Relation] = None
    product_brand: Optional[Relation] = None
    grind: Optional[Relation] = None
    moisture_level: Optional[Relation] = None
    nicotine_level: Optional[Relation] = None
    experience_level: Optional[Relation] = None
    tasting_notes: Tuple[Relation, ...] = ()
    tobacco_types: Tuple[Relation, ...] = ()
    cures: Tuple[Relation, ...] = ()
    completion_percent: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Specification":
        data = _require_mapping(data, "specification")
        star_rating = data.get("star_rating")
        if star_rating is not None and not isinstance(star_rating, (int, float)):
            raise ResponseFormatError("Specification field 'star_rating' must be a number")
        completion = data.get("completion_percent")
        if completion is not None and not isinstance(completion, (int, float)):
            completion = None
        return cls(
            id=_require_str(data, "id", "Specification"),
            shopify_handle=data.get("shopify_handle") or None,
            review=data.get("review"),
            star_rating=int(star_rating) if star_rating is not None else None,
            created_at=_optional_str(data, "created_at"),
            updated_at=_optional_str(data, "updated_at"),
            completion_percent=completion,
            **{key: Relation.optional(data.get(key)) for key in SINGLE_RELATIONS},
            **{key: _unwrap_relations(data, key) for key in WRAPPED_RELATIONS},
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "shopify_handle": self.shopify_handle,
            "review": self.review,
            "star_rating": self.star_rating,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        for key in SINGLE_RELATIONS:
            relation = getattr(self, key)
            result[key] = relation.to_dict() if relation else None
        for key, inner in WRAPPED_RELATIONS.items():
            result[key] = [{inner: r.to_dict()} for r in getattr(self, key)]
        if self.completion_percent is not None:
            result["completion_percent"] = self.completion_percent
        return result


@dataclass(frozen=True)
class SpecificationWithProduct:
    """A specification joined to its cached product."""

    specification: Specification
    product: Optional[Product] = None
    is_product_loading: bool = False
    completion_percent: Optional[float] = None

    @property
    def id(self) -> str:
        return self.specification.id

    @property
    def shopify_handle(self) -> Optional[str]:
        return self.specification.shopify_handle

    @property
    def display_title(self) -> str:
        """Product title, or the raw handle when the product never arrived."""
        if self.product:
            return self.product.title
        return self.shopify_handle or ""

    def to_dict(self) -> Dict[str, Any]:
        result = self.specification.to_dict()
        result["product"] = self.product.to_dict() if self.product else None
        result["isProductLoading"] = self.is_product_loading
        result["completion_percent"] = self.completion_percent
        return result


@dataclass(frozen=True)
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "reviewer"
    slack_userid: Optional[str] = None
    jotform_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "User":
        data = _require_mapping(data, "user")
        return cls(
            id=_require_str(data, "id", "User"),
            email=_require_str(data, "email", "User"),
            name=data.get("name"),
            role=str(data.get("role") or "reviewer"),
            slack_userid=data.get("slack_userid"),
            jotform_name=data.get("jotform_name"),
        )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_reviewer(self) -> bool:
        return self.role == "reviewer"

"""
Product endpoints for API v1.

CRUD over the catalogue plus the one-time-offer (OTO) configuration of
each product.  Reads need ``products:read``, writes ``products:write``.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.errors import success_response
from gateflow_api.app.core.pagination import ensure_valid_cursor, parse_limit
from gateflow_api.app.core.security import AuthContext, require_scopes
from gateflow_api.app.schemas.product import OtoOfferUpdate, ProductCreate, ProductUpdate
from gateflow_api.app.services.product_service import ProductService


router = APIRouter()


@router.get("")
async def list_products(
    limit: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    status_filter: str = Query("all", alias="status"),
    sort_by: Optional[str] = Query("created_at"),
    sort_order: str = Query("desc"),
    auth: AuthContext = Depends(require_scopes(Scopes.PRODUCTS_READ)),
) -> dict:
    """List products.

    - **search** matches name and description (case-insensitive).
    - **status** is `active`, `inactive` or `all`.
    - **sort_by** is one of name, price, created_at, updated_at,
      is_active, is_featured, slug.
    """
    page, pagination = await ProductService.list_products(
        limit=parse_limit(limit),
        cursor=ensure_valid_cursor(cursor),
        search=search,
        status=status_filter,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return success_response(page, pagination)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate,
    auth: AuthContext = Depends(require_scopes(Scopes.PRODUCTS_WRITE)),
) -> dict:
    return success_response(await ProductService.create_product(payload))


@router.get("/{product_id}")
async def get_product(
    product_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.PRODUCTS_READ)),
) -> dict:
    return success_response(await ProductService.get_product(product_id))


@router.patch("/{product_id}")
async def update_product(
    product_id: str,
    payload: ProductUpdate,
    auth: AuthContext = Depends(require_scopes(Scopes.PRODUCTS_WRITE)),
) -> dict:
    """Partially update a product; omitted fields are left unchanged."""
    return success_response(await ProductService.update_product(product_id, payload))


@router.delete("/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_product(
    product_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.PRODUCTS_WRITE)),
) -> None:
    """Delete a product.

    Fails with 409 while user access or payments still reference it.
    """
    await ProductService.delete_product(product_id)
    return None


@router.get("/{product_id}/oto")
async def get_oto(
    product_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.PRODUCTS_READ)),
) -> dict:
    return success_response(await ProductService.get_oto(product_id))


@router.put("/{product_id}/oto")
async def set_oto(
    product_id: str,
    payload: OtoOfferUpdate,
    auth: AuthContext = Depends(require_scopes(Scopes.PRODUCTS_WRITE)),
) -> dict:
    """Replace the product's one-time offer."""
    return success_response(await ProductService.set_oto(product_id, payload))


@router.delete("/{product_id}/oto", status_code=status.HTTP_204_NO_CONTENT)
async def delete_oto(
    product_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.PRODUCTS_WRITE)),
) -> None:
    await ProductService.delete_oto(product_id)
    return None

"""Installment cart kept in the user's store so it survives a refresh."""

from fastapi import APIRouter, Depends, status

from akshayapatra.middleware.exceptions import ResourceNotFoundError
from akshayapatra.schemas.local import InstallmentCart
from akshayapatra.storage.app_state import InstallmentCartStorage
from akshayapatra.storage.local import LocalStore, get_local_store

router = APIRouter()


@router.get("", response_model=InstallmentCart, response_model_by_alias=True)
async def get_cart(store: LocalStore = Depends(get_local_store)):
    cart = await InstallmentCartStorage(store).get()
    if cart is None:
        raise ResourceNotFoundError("Cart", "current")
    return cart


@router.put("", response_model=InstallmentCart, response_model_by_alias=True)
async def put_cart(body: InstallmentCart, store: LocalStore = Depends(get_local_store)):
    await InstallmentCartStorage(store).put(body)
    return body


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def clear_cart(store: LocalStore = Depends(get_local_store)):
    await InstallmentCartStorage(store).clear()

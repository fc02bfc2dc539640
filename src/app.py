import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, Response
from pydantic import BaseModel

from config import configure_logging, get_settings
from errors import AddressExists
from models import Address, Balance, SyncResult
from services import SyncService, build_sync_service
from store import Store, build_engine
from validation import is_valid_bitcoin_address

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    store = Store(build_engine(settings.database_url))
    app.state.store = store
    app.state.sync_service = build_sync_service(settings, store)
    logger.info("BitSync started")
    yield


app = FastAPI(title="BitSync", lifespan=lifespan)


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


# Schema for adding addresses
class AddressCreate(BaseModel):
    address: str
    label: Optional[str] = None


class AddressUpdate(BaseModel):
    label: Optional[str] = None


def _balance_data(balance: Optional[Balance]) -> Optional[dict]:
    if not balance:
        return None
    return {
        "confirmed": balance.confirmed_amount,
        "unconfirmed": balance.unconfirmed_amount,
        "confirmed_fiat": balance.confirmed_amount_fiat,
        "unconfirmed_fiat": balance.unconfirmed_amount_fiat,
        "last_updated": balance.last_updated,
    }


def _address_data(address_obj: Address, store: Store) -> dict:
    return {
        "id": address_obj.id,
        "address": address_obj.address,
        "label": address_obj.label,
        "created_at": address_obj.created_at,
        "last_synced_at": address_obj.last_synced_at,
        "balance": _balance_data(store.get_balance(address_obj.id)),
    }


def _get_address_or_404(store: Store, id: str) -> Address:
    address_obj = store.get_address(id)
    if not address_obj:
        raise HTTPException(status_code=404, detail="Address not found")
    return address_obj


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/addresses", status_code=201)
def create_address(
    payload: AddressCreate,
    background_tasks: BackgroundTasks,
    store: Store = Depends(get_store),
    sync_service: SyncService = Depends(get_sync_service),
):
    if not is_valid_bitcoin_address(payload.address):
        raise HTTPException(status_code=400, detail="Invalid Bitcoin address format")

    try:
        new_address = store.add_address(payload.address, label=payload.label)
    except AddressExists as e:
        raise HTTPException(status_code=409, detail=str(e))

    # Initial sync runs after the response is sent; its result is only logged
    background_tasks.add_task(sync_service.sync_in_background, new_address.id)

    return {
        "id": new_address.id,
        "address": new_address.address,
        "label": new_address.label,
        "created_at": new_address.created_at
    }


@app.get("/addresses")
def list_addresses(store: Store = Depends(get_store)):
    return [_address_data(address_obj, store) for address_obj in store.list_addresses()]


@app.get("/addresses/lookup")
def get_id_for_address(address: str, store: Store = Depends(get_store)):
    """
    Returns the 'id' for the given BTC address.
    Example usage: GET /addresses/lookup?address=<some address>
    """
    address_obj = store.get_address_by_string(address)
    if not address_obj:
        raise HTTPException(status_code=404, detail="Address not found")

    return {
        "id": address_obj.id,
        "address": address_obj.address
    }


@app.get("/addresses/{id}")
def get_address_details(id: str, store: Store = Depends(get_store)):
    """
    Return the address info, stored balance and transaction count.
    """
    address_obj = _get_address_or_404(store, id)
    data = _address_data(address_obj, store)
    data["transaction_count"] = store.count_transactions(id)
    return data


@app.patch("/addresses/{id}")
def update_address(id: str, payload: AddressUpdate, store: Store = Depends(get_store)):
    address_obj = store.update_label(id, payload.label)
    if not address_obj:
        raise HTTPException(status_code=404, detail="Address not found")
    return _address_data(address_obj, store)


@app.delete("/addresses/{id}", status_code=204)
def delete_address(id: str, store: Store = Depends(get_store)):
    if not store.delete_address(id):
        raise HTTPException(status_code=404, detail="Address not found")
    return Response(status_code=204)


@app.post("/addresses/{id}/sync", response_model=SyncResult)
def sync_address(
    id: str,
    store: Store = Depends(get_store),
    sync_service: SyncService = Depends(get_sync_service),
):
    """
    Sync one address now and report what changed.
    """
    _get_address_or_404(store, id)

    result = sync_service.sync(id)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or "Sync failed")
    return result


@app.post("/sync", response_model=List[SyncResult])
def sync_all(sync_service: SyncService = Depends(get_sync_service)):
    return sync_service.sync_all()


@app.get("/addresses/{id}/balance")
def get_address_balance(id: str, store: Store = Depends(get_store)):
    _get_address_or_404(store, id)
    balance = store.get_balance(id)
    if not balance:
        raise HTTPException(status_code=404, detail="Balance not available, address not synced yet")
    return {"address_id": id, **_balance_data(balance)}


@app.get("/addresses/{id}/transactions")
def get_address_transactions(
    id: str,
    limit: int = Query(10, gt=0),
    offset: int = Query(0, ge=0),
    store: Store = Depends(get_store),
):
    """
    Paginated retrieval of stored transactions, newest first.
    """
    address_obj = _get_address_or_404(store, id)
    txs = store.get_transactions(id, limit=limit, offset=offset)

    transactions_data = [
        {
            "id": tx.id,
            "tx_hash": tx.tx_hash,
            "block_height": tx.block_height,
            "timestamp": tx.timestamp,
            "amount": tx.amount,
            "direction": tx.direction,
            "confirmations": tx.confirmations,
            "fee": tx.fee
        }
        for tx in txs
    ]

    return {
        "id": address_obj.id,
        "address": address_obj.address,
        "limit": limit,
        "offset": offset,
        "total_transactions": store.count_transactions(id),
        "transactions": transactions_data
    }

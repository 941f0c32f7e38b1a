# app.py
import logging
import time
import datetime as dt
from typing import Optional, List

from fastapi import FastAPI, HTTPException, Depends, Query, Response, Header, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from pydantic import BaseModel, ConfigDict, Field as PydField, model_validator

from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select
from sqladmin import Admin, ModelView

from binder import CustomerDeviceBinder
from config import ADMIN_UI_PROTECT, configure_logging
from db import engine, get_session, init_db
from errors import EntitlementError
from models import APKInfo, Customer, CustomerDevice, Device, Token, to_iso_utc, utc_now, as_utc
from registry import CustomerRegistry, DeviceRegistry
from resolver import EntitlementResolver, PackageRequest
from security import is_admin_token, kid_from_pub, load_keys_from_env, sign_grant, token_fingerprint, verify_grant
from tokens import TokenIssuer, is_valid

logger = logging.getLogger(__name__)

# ================== Auth ==================
bearer = HTTPBearer(auto_error=False)
def admin_auth(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    x_admin_token: str | None = Header(None, alias="X-Admin-Token")
):
    """Capability check: may the caller administer entitlements?"""
    token = creds.credentials if creds else None
    if not token and x_admin_token:
        token = x_admin_token.strip()
    if not is_admin_token(token):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return True

# ================== Keys ==================
PRIV = None
PUB_PEM = None
KID = None

# ================== Helpers ==================
def _customer_dict(c: Customer, devices: Optional[int] = None, tokens: Optional[int] = None) -> dict:
    out = {
        "customerId": c.id,
        "key": c.customer_key,
        "name": c.customer_name,
        "note": c.customer_note,
        "createdAt": to_iso_utc(c.created_at),
    }
    if devices is not None:
        out["devices"] = devices
    if tokens is not None:
        out["tokens"] = tokens
    return out

def _device_dict(d: Device) -> dict:
    return {"deviceId": d.id, "code": d.device_code, "model": d.device_model,
            "createdAt": to_iso_utc(d.created_at)}

def _token_dict(t: Token, now: Optional[dt.datetime] = None) -> dict:
    return {
        "tokenValue": t.token_value,
        "customerKey": t.customer_key,
        "initDate": to_iso_utc(t.token_init_date),
        "expiry": to_iso_utc(t.token_expiry),
        "expired": not is_valid(t, now or utc_now()),
    }

def _apk_dict(a: APKInfo) -> dict:
    return {"apkName": a.apk_name, "apkVersion": a.apk_ver_number, "apkPath": a.apk_path,
            "deviceCode": a.device_code, "createdAt": to_iso_utc(a.created_at)}

# ================== App ==================
app = FastAPI(title="APK Entitlement Server", version="1.0.0")

@app.exception_handler(EntitlementError)
async def entitlement_error_handler(request: Request, exc: EntitlementError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(OperationalError)
async def storage_error_handler(request: Request, exc: OperationalError):
    logger.warning("storage unavailable on %s: %s", request.url.path, exc.orig or exc)
    return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable, retry later.",
                                                  "code": "Transient"})

# ---- SQLAdmin & /admin guard ----
class AdminAuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        if request.url.path.startswith("/admin"):
            auth_header = request.headers.get("Authorization", "")
            token = auth_header.split(" ", 1)[1].strip() if auth_header.startswith("Bearer ") else None
            if not is_admin_token(token):
                return Response("Unauthorized", status_code=401, headers={"WWW-Authenticate": "Bearer"})
        return await call_next(request)

if ADMIN_UI_PROTECT:
    app.add_middleware(AdminAuthMiddleware)
admin = Admin(app, engine)

class CustomerAdmin(ModelView, model=Customer):
    column_list = [Customer.id, Customer.customer_key, Customer.customer_name, Customer.customer_note, Customer.created_at]
    column_searchable_list = [Customer.customer_key, Customer.customer_name, Customer.customer_note]
    column_sortable_list = [Customer.id, Customer.customer_key, Customer.created_at]
    form_edit_rules = ["customer_name", "customer_note"]

class DeviceAdmin(ModelView, model=Device):
    column_list = [Device.id, Device.device_code, Device.device_model, Device.created_at]
    column_searchable_list = [Device.device_code, Device.device_model]
    # device_code is referenced by apkinfo rows
    form_edit_rules = ["device_model"]

class CustomerDeviceAdmin(ModelView, model=CustomerDevice):
    column_list = [CustomerDevice.customer_id, CustomerDevice.device_id, CustomerDevice.created_at]
    can_edit = False

class TokenAdmin(ModelView, model=Token):
    column_list = [Token.id, Token.customer_key, Token.token_init_date, Token.token_expiry]
    column_searchable_list = [Token.customer_key]
    column_sortable_list = [Token.id, Token.token_init_date, Token.token_expiry]
    # values are minted by POST /tokens only
    can_create = False
    form_edit_rules = ["token_expiry"]

class APKInfoAdmin(ModelView, model=APKInfo):
    column_list = [APKInfo.id, APKInfo.device_code, APKInfo.apk_name, APKInfo.apk_ver_number, APKInfo.apk_path]
    column_searchable_list = [APKInfo.device_code, APKInfo.apk_name]
    # rows go away only with their device or token
    can_create = False
    can_edit = False
    can_delete = False

admin.add_view(CustomerAdmin)
admin.add_view(DeviceAdmin)
admin.add_view(CustomerDeviceAdmin)
admin.add_view(TokenAdmin)
admin.add_view(APKInfoAdmin)

# ================== Lifecycle ==================
@app.on_event("startup")
def startup():
    global PRIV, PUB_PEM, KID
    configure_logging()
    init_db()
    PRIV, PUB_PEM = load_keys_from_env()
    KID = kid_from_pub(PUB_PEM)
    logger.info("entitlement server started kid=%s", KID)

@app.get("/health", tags=["System"])
def health():
    return {"ok": True, "kid": KID, "timestamp_utc": utc_now().isoformat()}

# ================== Schemas ==================
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

class CustomerCreate(CamelModel):
    key: str = PydField(min_length=1, max_length=191)
    name: str = PydField(min_length=1, max_length=255)
    note: Optional[str] = None

class CustomerUpdate(CamelModel):
    # key is immutable; extra="forbid" rejects it with 422
    name: Optional[str] = PydField(default=None, min_length=1, max_length=255)
    note: Optional[str] = None

class DeviceCreate(CamelModel):
    code: str = PydField(min_length=1, max_length=191)
    model: Optional[str] = PydField(default=None, max_length=255)

class DeviceUpdate(CamelModel):
    model: Optional[str] = PydField(default=None, max_length=255)

class BindingIn(CamelModel):
    customer_key: str = PydField(alias="customerKey")
    device_code: str = PydField(alias="deviceCode")

class TokenCreate(CamelModel):
    customer_key: str = PydField(alias="customerKey")
    ttl_seconds: Optional[int] = PydField(default=None, alias="ttlSeconds", ge=0)
    expiry: Optional[dt.datetime] = None

    @model_validator(mode="after")
    def _one_expiry_source(self):
        if self.ttl_seconds is not None and self.expiry is not None:
            raise ValueError("ttlSeconds and expiry are mutually exclusive")
        return self

class GrantVerifyIn(CamelModel):
    grant: str

class CustomerListResponse(BaseModel):
    items: List[dict]
    total: int
    page: int
    page_size: int
    pages: int

# ================== Customers ==================
@app.post("/customers", status_code=201, tags=["Admin"], dependencies=[Depends(admin_auth)])
def create_customer(data: CustomerCreate, db: Session = Depends(get_session)):
    customer = CustomerRegistry(db).create(data.key, data.name, data.note)
    return {"customerId": customer.id}

@app.get("/customers", response_model=CustomerListResponse, tags=["Admin"], dependencies=[Depends(admin_auth)])
def list_customers(
    db: Session = Depends(get_session),
    q: Optional[str] = Query(None, description="Search by key, name, or note"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
):
    rows, total = CustomerRegistry(db).list(q, page, page_size)
    items = [_customer_dict(r["customer"], r["devices"], r["tokens"]) for r in rows]
    pages = (total + page_size - 1) // page_size
    return {"items": items, "total": total, "page": page, "page_size": page_size, "pages": pages}

@app.get("/customers/{key}", tags=["Admin"], dependencies=[Depends(admin_auth)])
def get_customer(key: str, db: Session = Depends(get_session)):
    return _customer_dict(CustomerRegistry(db).get_by_key(key))

@app.patch("/customers/{key}", tags=["Admin"], dependencies=[Depends(admin_auth)])
def update_customer(key: str, data: CustomerUpdate, db: Session = Depends(get_session)):
    customer = CustomerRegistry(db).update(key, data.name, data.note)
    return _customer_dict(customer)

@app.delete("/customers/{key}", status_code=204, tags=["Admin"], dependencies=[Depends(admin_auth)])
def delete_customer(key: str, db: Session = Depends(get_session)):
    CustomerRegistry(db).delete_by_key(key)
    return Response(status_code=204)

@app.get("/customers/{key}/devices", tags=["Admin"], dependencies=[Depends(admin_auth)])
def customer_devices(key: str, db: Session = Depends(get_session)):
    customer = CustomerRegistry(db).get_by_key(key)
    return [_device_dict(d) for d in CustomerDeviceBinder(db).devices_of(customer.id)]

@app.get("/customers/{key}/tokens", tags=["Admin"], dependencies=[Depends(admin_auth)])
def customer_tokens(key: str, db: Session = Depends(get_session)):
    customer = CustomerRegistry(db).get_by_key(key)
    now = utc_now()
    return [_token_dict(t, now) for t in TokenIssuer(db).tokens_of(customer.customer_key)]

# ================== Devices ==================
@app.post("/devices", status_code=201, tags=["Admin"], dependencies=[Depends(admin_auth)])
def register_device(data: DeviceCreate, db: Session = Depends(get_session)):
    device = DeviceRegistry(db).register(data.code, data.model)
    return {"deviceId": device.id}

@app.get("/devices/{code}", tags=["Admin"], dependencies=[Depends(admin_auth)])
def get_device(code: str, db: Session = Depends(get_session)):
    return _device_dict(DeviceRegistry(db).get_by_code(code))

@app.patch("/devices/{code}", tags=["Admin"], dependencies=[Depends(admin_auth)])
def update_device(code: str, data: DeviceUpdate, db: Session = Depends(get_session)):
    return _device_dict(DeviceRegistry(db).update(code, data.model))

@app.delete("/devices/{code}", status_code=204, tags=["Admin"], dependencies=[Depends(admin_auth)])
def delete_device(code: str, db: Session = Depends(get_session)):
    DeviceRegistry(db).delete_by_code(code)
    return Response(status_code=204)

@app.get("/devices/{code}/customers", tags=["Admin"], dependencies=[Depends(admin_auth)])
def device_customers(code: str, db: Session = Depends(get_session)):
    device = DeviceRegistry(db).get_by_code(code)
    return [_customer_dict(c) for c in CustomerDeviceBinder(db).customers_of(device.id)]

@app.get("/devices/{code}/entitlements", tags=["Admin"], dependencies=[Depends(admin_auth)])
def device_entitlements(code: str, db: Session = Depends(get_session)):
    device = DeviceRegistry(db).get_by_code(code)
    rows = db.exec(select(APKInfo).where(APKInfo.device_code == device.device_code)
                   .order_by(APKInfo.apk_name, APKInfo.apk_ver_number)).all()
    return [_apk_dict(a) for a in rows]

# ================== Bindings ==================
def _binding_ids(data: BindingIn, db: Session):
    customer = CustomerRegistry(db).get_by_key(data.customer_key)
    device = DeviceRegistry(db).get_by_code(data.device_code)
    return customer.id, device.id

@app.post("/bindings", status_code=204, tags=["Admin"], dependencies=[Depends(admin_auth)])
def bind_device(data: BindingIn, db: Session = Depends(get_session)):
    CustomerDeviceBinder(db).bind(*_binding_ids(data, db))
    return Response(status_code=204)

@app.delete("/bindings", status_code=204, tags=["Admin"], dependencies=[Depends(admin_auth)])
def unbind_device(data: BindingIn, db: Session = Depends(get_session)):
    CustomerDeviceBinder(db).unbind(*_binding_ids(data, db))
    return Response(status_code=204)

# ================== Tokens ==================
@app.post("/tokens", status_code=201, tags=["Admin"], dependencies=[Depends(admin_auth)])
def issue_token(data: TokenCreate, db: Session = Depends(get_session)):
    ttl = dt.timedelta(seconds=data.ttl_seconds) if data.ttl_seconds is not None else None
    token = TokenIssuer(db).issue(data.customer_key, ttl=ttl, expiry=data.expiry)
    return {"tokenValue": token.token_value, "expiry": to_iso_utc(token.token_expiry)}

@app.delete("/tokens/{token_value}", status_code=204, tags=["Admin"], dependencies=[Depends(admin_auth)])
def revoke_token(token_value: str, db: Session = Depends(get_session)):
    TokenIssuer(db).revoke(token_value)
    return Response(status_code=204)

# ================== Public Endpoints ==================
@app.get("/entitlement", tags=["Public"])
def resolve_entitlement(
    device: str = Query(..., min_length=1),
    token: str = Query(..., min_length=1),
    package: str = Query(..., min_length=1),
    version: str = Query(..., min_length=1),
    db: Session = Depends(get_session),
):
    res = EntitlementResolver(db).resolve_entitlement(device, token, PackageRequest(package, version))
    apk = res.apk
    payload = {
        "d": apk.device_code,
        "t": token_fingerprint(apk.token_value),
        "n": apk.apk_name,
        "v": apk.apk_ver_number,
        "p": apk.apk_path,
        "i": int(time.time()),
    }
    if res.token_expiry is not None:
        payload["e"] = int(as_utc(res.token_expiry).timestamp())
    return {
        "apkName": apk.apk_name,
        "apkPath": apk.apk_path,
        "apkVersion": apk.apk_ver_number,
        "grant": sign_grant(PRIV, payload),
        "kid": KID,
    }

@app.post("/grants/verify", tags=["Public"])
def verify(data: GrantVerifyIn):
    try:
        claims = verify_grant(PUB_PEM, data.grant)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=f"Invalid grant: {e}")
    return {"ok": True, "kid": KID, "claims": claims}

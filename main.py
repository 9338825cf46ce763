import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, ConfigDict, Field

from auth import AuthManager, confirm_passwords_match
from database import db, ensure_indexes
from errors import DirectoryError, NotFoundError
from mail import Mailer
from stores import StoreRepository

logger = logging.getLogger("uvicorn.error")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login", auto_error=False)

# Request/Response Models
class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    email: str
    password: str
    password_confirm: str = Field(..., alias="password-confirm")

class LoginRequest(BaseModel):
    email: str
    password: str

class ForgotRequest(BaseModel):
    email: str

class ResetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    password: str
    password_confirm: str = Field(..., alias="password-confirm")

class AccountRequest(BaseModel):
    name: str
    email: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]
    message: Optional[str] = None

# Dependencies

def get_stores(request: Request) -> StoreRepository:
    stores = getattr(request.app.state, "stores", None)
    if stores is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return stores


def get_auth(request: Request) -> AuthManager:
    auth = getattr(request.app.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return auth


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), auth: AuthManager = Depends(get_auth)):
    user = auth.deserialize_user(token) if token else None
    if not user:
        raise HTTPException(status_code=401, detail="Oops! you must be logged in to do that!")
    return user


router = APIRouter()

# Stores
@router.get("/")
@router.get("/stores")
@router.get("/stores/page/{page}")
def list_stores(page: int = 1, stores: StoreRepository = Depends(get_stores)):
    result = stores.list_stores(page)
    if result.out_of_range:
        return RedirectResponse(f"/stores/page/{result.pages}", status_code=302)
    return {"stores": result.stores, "page": result.page, "pages": result.pages, "count": result.count}

@router.post("/add")
def create_store(payload: Dict[str, Any] = Body(...), current_user=Depends(get_current_user),
                 stores: StoreRepository = Depends(get_stores)):
    store = stores.create_store(payload, current_user["id"])
    return {"store": store, "message": f"Successfully Created {store['name']}. Care to leave a review?"}

@router.post("/add/{store_id}")
def update_store(store_id: str, payload: Dict[str, Any] = Body(...), current_user=Depends(get_current_user),
                 stores: StoreRepository = Depends(get_stores)):
    store = stores.update_store(store_id, payload, current_user["id"])
    return {"store": store, "message": f"Successfully updated {store['name']}."}

@router.get("/stores/{store_id}/edit")
def edit_store(store_id: str, current_user=Depends(get_current_user), stores: StoreRepository = Depends(get_stores)):
    return {"store": stores.edit_store(store_id, current_user["id"])}

@router.get("/store/{slug}")
def get_store_by_slug(slug: str, stores: StoreRepository = Depends(get_stores)):
    return {"store": stores.get_store_by_slug(slug)}

@router.get("/tags")
@router.get("/tags/{tag}")
def get_stores_by_tag(tag: Optional[str] = None, stores: StoreRepository = Depends(get_stores)):
    return stores.get_stores_by_tag(tag)

@router.get("/top")
def get_top_stores(stores: StoreRepository = Depends(get_stores)):
    return {"stores": stores.get_top_stores()}

@router.get("/hearts")
def get_hearts(current_user=Depends(get_current_user), stores: StoreRepository = Depends(get_stores)):
    return {"stores": stores.get_hearted_stores(current_user["id"])}

@router.post("/reviews/{store_id}")
def add_review(store_id: str, payload: Dict[str, Any] = Body(...), current_user=Depends(get_current_user),
               stores: StoreRepository = Depends(get_stores)):
    review = stores.add_review(current_user["id"], store_id, payload)
    return {"review": review, "message": "Review Saved!"}

# Users / auth
@router.post("/register", response_model=TokenResponse)
def register(payload: RegisterRequest, auth: AuthManager = Depends(get_auth)):
    confirm_passwords_match(payload.password, payload.password_confirm)
    user = auth.register(payload.email, payload.name, payload.password)
    return TokenResponse(access_token=auth.create_session(user), user=user, message="You are now logged in!")

@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, auth: AuthManager = Depends(get_auth)):
    user = auth.authenticate(payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Failed Login!")
    return TokenResponse(access_token=auth.create_session(user), user=user, message="You are now logged in!")

@router.get("/logout")
def logout():
    # Sessions are bearer tokens; the client drops it
    return {"message": "You are now logged out!"}

@router.get("/account")
def account(current_user=Depends(get_current_user)):
    return current_user

@router.post("/account")
def update_account(payload: AccountRequest, current_user=Depends(get_current_user), auth: AuthManager = Depends(get_auth)):
    user = auth.update_account(current_user["id"], payload.model_dump())
    return {"user": user, "message": "Your account has been updated!"}

@router.post("/account/forgot")
def forgot(payload: ForgotRequest, request: Request, auth: AuthManager = Depends(get_auth)):
    try:
        auth.request_reset(payload.email, str(request.base_url) + "account/reset")
    except NotFoundError:
        # same answer either way so the endpoint cannot be used to discover which accounts exist
        logger.info("Password reset requested for unknown email")
    return {"message": "If an account exists for that email, a password reset link has been sent."}

@router.get("/account/reset/{token}")
def reset_form(token: str, auth: AuthManager = Depends(get_auth)):
    auth.validate_reset_token(token)
    return {"message": "Reset Your Password"}

@router.post("/account/reset/{token}", response_model=TokenResponse)
def reset(token: str, payload: ResetRequest, auth: AuthManager = Depends(get_auth)):
    user, access_token = auth.complete_reset(token, payload.password, payload.password_confirm)
    return TokenResponse(access_token=access_token, user=user,
                         message="Nice! Your password has been reset! You are now logged in!")

# API
@router.get("/api/search")
def search_stores(q: str = Query(..., min_length=1), stores: StoreRepository = Depends(get_stores)):
    return stores.search_stores(q)

@router.get("/api/stores/near")
def stores_near(lng: float = Query(..., ge=-180, le=180), lat: float = Query(..., ge=-90, le=90),
                stores: StoreRepository = Depends(get_stores)):
    return stores.stores_near(lng, lat)

@router.post("/api/stores/{store_id}/heart")
def heart_store(store_id: str, current_user=Depends(get_current_user), stores: StoreRepository = Depends(get_stores)):
    return {"hearts": stores.toggle_heart(current_user["id"], store_id)}

@router.get("/health")
def health():
    return {"ok": True}


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = app.state.database
    if database is not None:
        try:
            ensure_indexes(database)
            logger.info("MongoDB indexes ensured")
        except Exception:
            logger.exception("MongoDB index creation failed")
    yield


def create_app(database=db, mailer=None) -> FastAPI:
    """Build the app and the repositories it hands to every request."""
    app = FastAPI(title="Store Directory API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.database = database
    if database is not None:
        app.state.stores = StoreRepository(database)
        app.state.auth = AuthManager(database, mailer=mailer or Mailer())
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, data routes will answer 503")

    @app.exception_handler(DirectoryError)
    async def directory_error_handler(request: Request, exc: DirectoryError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

"""
Shopping Assistant API - FastAPI application over ShoppingAssistantService.

Business rejections come back as 200 with `success: false`; unknown
sessions, users and products are 404; an operation the session state does
not define is 409.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config.settings import get_settings
from ..engine.models import Product, UserProfile
from ..services.assistant_service import ShoppingAssistantService
from ..services.rules_service import RulesService
from ..session.orders import CheckoutData
from ..session.state_machine import InvalidStateOperation, ShoppingSession
from .rules_api import router as rules_router


# Pydantic models for API
class UserCreate(BaseModel):
    """Request model for registering a user."""
    id: str
    name: str = ""
    is_student: bool = False
    attributes: dict = Field(default_factory=dict)

    def to_profile(self) -> UserProfile:
        return UserProfile(id=self.id, name=self.name, is_student=self.is_student, attributes=dict(self.attributes))


class SessionCreate(BaseModel):
    user_id: str
    user: Optional[UserCreate] = None


class BrowseRequest(BaseModel):
    product_id: str


class CartAdd(BaseModel):
    product_id: str
    quantity: int = 1


class CartUpdate(BaseModel):
    quantity: int


class CheckoutRequest(BaseModel):
    """Billing and payment details; name, email and card_number are required at checkout."""
    name: str = ""
    email: str = ""
    card_number: str = ""
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class CouponRequest(BaseModel):
    code: str


class ProductCreate(BaseModel):
    id: str
    name: str
    price: float = Field(ge=0)
    stock: int = 0
    category: str = "general"
    tags: list[str] = Field(default_factory=list)
    rating: Optional[float] = None


def get_service(request: Request) -> ShoppingAssistantService:
    return request.app.state.service


def _session_or_404(service: ShoppingAssistantService, session_id: str) -> ShoppingSession:
    session = service.session_manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return session


def _product_or_404(service: ShoppingAssistantService, product_id: str) -> Product:
    product = service.get_product(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail=f"Product '{product_id}' not found")
    return product


def _user_or_404(service: ShoppingAssistantService, user_id: str) -> UserProfile:
    user = service.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"User '{user_id}' not found")
    return user


def create_app(service: Optional[ShoppingAssistantService] = None) -> FastAPI:
    """Build the app. Without a service, one is created from the global settings."""
    settings = service.settings if service is not None else get_settings()
    if service is None:
        service = ShoppingAssistantService.create(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.start()
        yield
        service.shutdown()

    app = FastAPI(
        title="Shopping Assistant API",
        description="Rule-driven discounts, recommendations and shopping sessions",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.rules_service = RulesService(settings.rules_csv)

    # Enable CORS for frontend development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvalidStateOperation)
    async def invalid_state_handler(request: Request, exc: InvalidStateOperation):
        return JSONResponse(status_code=409, content={"detail": str(exc), "state": exc.state.value})

    app.include_router(rules_router)

    @app.get("/")
    async def root():
        return {"status": "online", "message": "Shopping Assistant API Active"}

    # Users

    @app.post("/users")
    def register_user(user: UserCreate, service: ShoppingAssistantService = Depends(get_service)):
        return jsonable_encoder(service.register_user(user.to_profile()).to_dict())

    @app.get("/users/{user_id}/recommendations")
    def get_recommendations(user_id: str, service: ShoppingAssistantService = Depends(get_service)):
        _user_or_404(service, user_id)
        return jsonable_encoder(service.get_recommendations(user_id).to_dict())

    @app.get("/users/{user_id}/coupons")
    def get_coupons(user_id: str, service: ShoppingAssistantService = Depends(get_service)):
        _user_or_404(service, user_id)
        return jsonable_encoder(service.get_available_coupons(user_id).to_dict())

    # Sessions

    @app.post("/sessions")
    def start_session(req: SessionCreate, service: ShoppingAssistantService = Depends(get_service)):
        user = req.user.to_profile() if req.user is not None else None
        return jsonable_encoder(service.start_session(req.user_id, user).to_dict())

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str, service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        return jsonable_encoder(service.get_session(session_id).to_dict())

    @app.post("/sessions/{session_id}/browse")
    def browse(session_id: str, req: BrowseRequest, service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        _product_or_404(service, req.product_id)
        return jsonable_encoder(service.browse(session_id, req.product_id).to_dict())

    @app.post("/sessions/{session_id}/cart")
    def add_to_cart(session_id: str, req: CartAdd, service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        _product_or_404(service, req.product_id)
        return jsonable_encoder(service.add_to_cart(session_id, req.product_id, req.quantity).to_dict())

    @app.put("/sessions/{session_id}/cart/{product_id}")
    def update_cart_item(session_id: str, product_id: str, req: CartUpdate,
                         service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        return jsonable_encoder(service.update_cart_item(session_id, product_id, req.quantity).to_dict())

    @app.delete("/sessions/{session_id}/cart/{product_id}")
    def remove_from_cart(session_id: str, product_id: str, service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        return jsonable_encoder(service.remove_from_cart(session_id, product_id).to_dict())

    @app.get("/sessions/{session_id}/evaluation")
    def evaluate_cart(session_id: str, service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        return jsonable_encoder(service.evaluate_cart(session_id).to_dict())

    @app.post("/sessions/{session_id}/coupon")
    def apply_coupon(session_id: str, req: CouponRequest, service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        return jsonable_encoder(service.apply_coupon(session_id, req.code).to_dict())

    @app.post("/sessions/{session_id}/checkout")
    def proceed_to_checkout(session_id: str, service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        return jsonable_encoder(service.proceed_to_checkout(session_id).to_dict())

    @app.post("/sessions/{session_id}/checkout/complete")
    def complete_checkout(session_id: str, req: CheckoutRequest,
                          service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        checkout = CheckoutData(**req.model_dump())
        return jsonable_encoder(service.complete_checkout(session_id, checkout).to_dict())

    @app.post("/sessions/{session_id}/checkout/cancel")
    def cancel_checkout(session_id: str, service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        return jsonable_encoder(service.cancel_checkout(session_id).to_dict())

    @app.post("/sessions/{session_id}/abandon")
    def abandon_session(session_id: str, service: ShoppingAssistantService = Depends(get_service)):
        _session_or_404(service, session_id)
        return jsonable_encoder(service.abandon_session(session_id).to_dict())

    # Products

    @app.get("/products")
    def list_products(category: Optional[str] = None, service: ShoppingAssistantService = Depends(get_service)):
        products = service.get_all_products()
        if category:
            products = [p for p in products if p.category == category]
        return [p.to_dict() for p in products]

    @app.get("/products/{product_id}")
    def get_product(product_id: str, service: ShoppingAssistantService = Depends(get_service)):
        return _product_or_404(service, product_id).to_dict()

    @app.post("/products")
    def add_product(req: ProductCreate, service: ShoppingAssistantService = Depends(get_service)):
        return service.add_product(Product(**req.model_dump())).to_dict()

    @app.get("/statistics")
    def get_statistics(service: ShoppingAssistantService = Depends(get_service)):
        return jsonable_encoder(service.get_statistics())

    return app

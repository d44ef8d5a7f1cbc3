import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from .carrier import DelhiveryCarrier
from .config import Settings, configure_logging, load_settings
from .database import get_db, init_db
from .errors import FulfillmentError
from .fulfillment import FulfillmentService
from .gateway import RazorpayGateway
from .identity import HttpIdentityProvider, Principal, get_current_principal, require_admin
from .messaging import NullPublisher, RabbitMQPublisher
from .models import OrderStatus
from .schemas import (
    CheckoutRequest,
    InventoryCreate,
    InventoryOut,
    InventoryUpdate,
    InvoiceOut,
    InvoiceStatusRequest,
    OrderDetail,
    OrderSummary,
    PaymentOut,
    PaymentProcessRequest,
    RefundRequest,
    ShippingMethodCreate,
    ShippingMethodOut,
    ShippingMethodUpdate,
    ShippingQuoteRequest,
    StatusUpdateRequest,
    VerifyPaymentRequest,
    paginated,
)

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


# --- Envelope ---

def ok(data=None, status_code: int = 200) -> JSONResponse:
    """Wraps a successful result in the {"success": true, "data": ...} envelope."""
    return JSONResponse(
        status_code=status_code,
        content={"success": True, "data": jsonable_encoder(data, custom_encoder={Decimal: str})},
    )


def error(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    body = {"status": status_code, "code": code, "message": message}
    if details is not None:
        body["details"] = jsonable_encoder(details, custom_encoder={Decimal: str})
    return JSONResponse(status_code=status_code, content={"success": False, "error": body})


# --- Exception handlers ---

async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    """Map FulfillmentError subclasses to their HTTP status and error code."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error(exc.status_code, exc.code, exc.message, exc.details)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return error(400, "VALIDATION_ERROR", "Invalid request", details)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return error(exc.status_code, code, str(exc.detail))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error(500, "INTERNAL_SERVER_ERROR", "Internal server error")


# --- Dependencies ---

def get_service(request: Request, db: Session = Depends(get_db)) -> FulfillmentService:
    state = request.app.state
    return FulfillmentService(db, state.settings, state.gateway, state.carrier, state.publisher)


router = APIRouter(prefix="/api/v1")


# --- Orders ---

@router.post("/orders")
def checkout(req: CheckoutRequest, principal: Principal = Depends(get_current_principal),
             service: FulfillmentService = Depends(get_service)):
    """Creates an order from the caller's cart."""
    order = service.checkout(
        principal,
        cart_id=req.cart_id,
        shipping_address_id=req.shipping_address_id,
        billing_address_id=req.billing_address_id,
        shipping_method=req.shipping_method,
        payment_method=req.payment_method,
        notes=req.notes,
    )
    return ok(OrderDetail.model_validate(order), status_code=201)


@router.get("/orders")
def list_my_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                   principal: Principal = Depends(get_current_principal),
                   service: FulfillmentService = Depends(get_service)):
    orders, total = service.list_orders(principal, page, limit)
    return ok(paginated([OrderSummary.model_validate(o) for o in orders], total, page, limit))


@router.get("/admin/orders")
def list_all_orders(status: Optional[OrderStatus] = None,
                    from_date: Optional[datetime] = None,
                    to_date: Optional[datetime] = None,
                    search: Optional[str] = None,
                    page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                    principal: Principal = Depends(require_admin),
                    service: FulfillmentService = Depends(get_service)):
    orders, total = service.list_all_orders(status, from_date, to_date, search, page, limit)
    return ok(paginated([OrderSummary.model_validate(o) for o in orders], total, page, limit))


@router.get("/orders/{order_id}")
def get_order(order_id: int, principal: Principal = Depends(get_current_principal),
              service: FulfillmentService = Depends(get_service)):
    return ok(OrderDetail.model_validate(service.get_order(principal, order_id)))


@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: int, principal: Principal = Depends(get_current_principal),
                 service: FulfillmentService = Depends(get_service)):
    order = service.cancel(principal, order_id)
    return ok(OrderDetail.model_validate(order))


@router.put("/orders/{order_id}/status")
def update_order_status(order_id: int, req: StatusUpdateRequest,
                        principal: Principal = Depends(require_admin),
                        service: FulfillmentService = Depends(get_service)):
    order = service.update_status(principal, order_id, req.status, req.notes)
    return ok(OrderDetail.model_validate(order))


# --- Invoices ---

@router.post("/orders/{order_id}/invoice")
def create_invoice(order_id: int, principal: Principal = Depends(get_current_principal),
                   service: FulfillmentService = Depends(get_service)):
    invoice = service.create_invoice(principal, order_id)
    return ok(InvoiceOut.model_validate(invoice), status_code=201)


@router.get("/orders/{order_id}/invoice")
def get_invoice(order_id: int, principal: Principal = Depends(get_current_principal),
                service: FulfillmentService = Depends(get_service)):
    return ok(InvoiceOut.model_validate(service.get_invoice(principal, order_id)))


@router.put("/invoices/{invoice_id}/status")
def update_invoice_status(invoice_id: int, req: InvoiceStatusRequest,
                          principal: Principal = Depends(require_admin),
                          service: FulfillmentService = Depends(get_service)):
    invoice = service.update_invoice_status(principal, invoice_id, req.status)
    return ok(InvoiceOut.model_validate(invoice))


# --- Payments ---

@router.post("/payments/process")
def process_payment(req: PaymentProcessRequest,
                    principal: Principal = Depends(get_current_principal),
                    service: FulfillmentService = Depends(get_service)):
    """
    Runs one step of the gateway checkout:
    - create_order: opens a gateway order and returns the client checkout parameters.
    - verify: checks the callback signature and completes the payment.
    """
    action = req.root
    if isinstance(action, VerifyPaymentRequest):
        payment = service.verify_payment(
            principal,
            action.order_id,
            action.razorpay_order_id,
            action.razorpay_payment_id,
            action.razorpay_signature,
        )
        return ok(PaymentOut.model_validate(payment))
    return ok(service.start_payment(principal, action.order_id))


@router.get("/payments/order/{order_id}")
def get_order_payment(order_id: int, principal: Principal = Depends(get_current_principal),
                      service: FulfillmentService = Depends(get_service)):
    return ok(PaymentOut.model_validate(service.get_payment(principal, order_id)))


@router.put("/payments/{payment_id}/refund")
def refund_payment(payment_id: int, req: Optional[RefundRequest] = None,
                   principal: Principal = Depends(require_admin),
                   service: FulfillmentService = Depends(get_service)):
    req = req or RefundRequest()
    payment = service.refund(principal, payment_id, req.reason, req.amount)
    return ok(PaymentOut.model_validate(payment))


@router.post("/webhooks/{gateway}")
async def receive_webhook(gateway: str, request: Request,
                          service: FulfillmentService = Depends(get_service)):
    """Gateway webhook receiver. Answers success unless the signature is wrong."""
    body = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    result = await run_in_threadpool(service.ingest_webhook, gateway, body, signature)
    return ok(result)


# --- Shipping ---

@router.get("/shipping/methods")
def list_shipping_methods(service: FulfillmentService = Depends(get_service)):
    return ok([ShippingMethodOut.model_validate(m) for m in service.list_shipping_methods()])


@router.post("/shipping/methods")
def create_shipping_method(req: ShippingMethodCreate, principal: Principal = Depends(require_admin),
                           service: FulfillmentService = Depends(get_service)):
    method = service.create_shipping_method(**req.model_dump())
    return ok(ShippingMethodOut.model_validate(method), status_code=201)


@router.put("/shipping/methods/{method_id}")
def update_shipping_method(method_id: int, req: ShippingMethodUpdate,
                           principal: Principal = Depends(require_admin),
                           service: FulfillmentService = Depends(get_service)):
    method = service.update_shipping_method(method_id, **req.model_dump(exclude_unset=True))
    return ok(ShippingMethodOut.model_validate(method))


@router.post("/shipping/quote")
def quote_shipping(req: ShippingQuoteRequest, principal: Principal = Depends(get_current_principal),
                   service: FulfillmentService = Depends(get_service)):
    items = [(item.product_variant_id, item.quantity) for item in req.items]
    return ok(service.quote_shipping(principal, req.shipping_method_id, req.address_id, items))


@router.post("/orders/{order_id}/shipping/label")
def generate_shipping_label(order_id: int, principal: Principal = Depends(require_admin),
                            service: FulfillmentService = Depends(get_service)):
    return ok(service.generate_label(principal, order_id), status_code=201)


@router.get("/orders/{order_id}/shipping")
def get_order_shipping(order_id: int, principal: Principal = Depends(get_current_principal),
                       service: FulfillmentService = Depends(get_service)):
    return ok(service.order_shipping(principal, order_id))


@router.get("/shipping/track/{tracking_number}")
def track_shipment(tracking_number: str, principal: Principal = Depends(get_current_principal),
                   service: FulfillmentService = Depends(get_service)):
    return ok(service.track(principal, tracking_number))


# --- Inventory ---

@router.get("/inventory")
def list_inventory(low_stock: bool = False, page: int = Query(1, ge=1),
                   limit: int = Query(20, ge=1, le=100),
                   principal: Principal = Depends(require_admin),
                   service: FulfillmentService = Depends(get_service)):
    records, total = service.list_inventory(low_stock, page, limit)
    return ok(paginated([InventoryOut.model_validate(r) for r in records], total, page, limit))


@router.post("/inventory")
def create_inventory(req: InventoryCreate, principal: Principal = Depends(require_admin),
                     service: FulfillmentService = Depends(get_service)):
    record = service.create_inventory(
        req.product_variant_id, req.quantity, req.reorder_level, req.reorder_quantity
    )
    return ok(InventoryOut.model_validate(record), status_code=201)


@router.get("/inventory/{variant_id}")
def get_inventory(variant_id: int, principal: Principal = Depends(require_admin),
                  service: FulfillmentService = Depends(get_service)):
    return ok(InventoryOut.model_validate(service.get_inventory(variant_id)))


@router.put("/inventory/{variant_id}")
def update_inventory(variant_id: int, req: InventoryUpdate,
                     principal: Principal = Depends(require_admin),
                     service: FulfillmentService = Depends(get_service)):
    record = service.adjust_inventory(variant_id, **req.model_dump())
    return ok(InventoryOut.model_validate(record))


# --- App ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables on startup if they don't exist.
    init_db()
    yield


def create_app(settings: Settings | None = None, identity=None, gateway=None, carrier=None,
               publisher=None) -> FastAPI:
    """
    Builds the API. Collaborators default to the real clients configured from
    the environment; tests pass in-memory fakes.
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Fulfillment Service", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.identity = identity or HttpIdentityProvider(settings.identity_url)
    app.state.gateway = gateway or RazorpayGateway(
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        settings.razorpay_webhook_secret,
        base_url=settings.razorpay_base_url,
        timeout=settings.gateway_timeout_seconds,
    )
    app.state.carrier = carrier or DelhiveryCarrier(
        settings.delhivery_api_key,
        base_url=settings.delhivery_base_url,
        timeout=settings.carrier_timeout_seconds,
    )
    if publisher is None:
        publisher = (
            RabbitMQPublisher(settings.rabbitmq_host, settings.rabbitmq_exchange)
            if settings.rabbitmq_host
            else NullPublisher()
        )
    app.state.publisher = publisher

    app.add_exception_handler(FulfillmentError, fulfillment_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/")
    def root():
        """Health check endpoint."""
        return ok({"message": "Fulfillment service is running"})

    @app.get("/health")
    def health():
        return ok({"status": "ok", "version": __version__})

    app.include_router(router)
    return app


app = create_app()

# academy_payments/main.py
from typing import List, Optional
import logging

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from academy_payments import config, database, engine, events, pricing, reconciliation, schemas, store
from academy_payments.constants import MONNIFY_PROVIDER
from academy_payments.errors import PaymentServiceError, ValidationError
from academy_payments.gateway import MonnifyClient
from academy_payments.webhooks import WebhookProcessor

# logging
logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("payment-service")

SIGNATURE_HEADERS = ("monnify-signature", "x-monnify-signature")

app = FastAPI(title="Academy Payment Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Startup: initialize DB, the enrollment-event consumer and background workers
@app.on_event("startup")
def startup():
    logger.info("Initializing DB and starting background workers...")
    session_factory = database.init_db(config.DATABASE_URL)
    events.start_consumer(config.DATABASE_URL, config.RABBITMQ_URL, config.ENROLLMENT_QUEUE)
    events.start_outbox_relay(config.RABBITMQ_URL)
    reconciliation.start_sweeper(session_factory)
    logger.info("Startup complete.")


@app.exception_handler(PaymentServiceError)
def payment_error_handler(request: Request, exc: PaymentServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


_gateway = None
def get_gateway() -> MonnifyClient:
    global _gateway
    if _gateway is None:
        _gateway = MonnifyClient()
    return _gateway


def get_engine(gateway: MonnifyClient = Depends(get_gateway)) -> engine.PaymentEngine:
    return engine.PaymentEngine(gateway)


def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor()


def get_db():
    yield from database.get_db()


def _payment_detail(payment, transactions) -> schemas.PaymentDetail:
    return schemas.PaymentDetail(
        **schemas.PaymentOut.model_validate(payment).model_dump(),
        transactions=[schemas.TransactionOut.model_validate(t) for t in transactions],
    )


# Root and health endpoints
@app.get("/")
def root():
    return {"service": "Academy Payment Service", "status": "running", "endpoints": ["/payments", "/webhooks", "/docs"]}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


@app.get("/pricing/{skill}/{scholarship_type}", response_model=schemas.PricingBreakdown)
def pricing_breakdown(skill: str, scholarship_type: str):
    return pricing.payment_breakdown(skill, scholarship_type)


# Start a stage payment and hand back the gateway checkout URL
@app.post("/payments/initialize", response_model=schemas.PaymentInitialized, status_code=201)
def initialize_payment(payment_in: schemas.PaymentInitialize, db: Session = Depends(get_db),
                       payment_engine: engine.PaymentEngine = Depends(get_engine)):
    payment = payment_engine.initialize_payment(
        db,
        user_id=payment_in.user_id,
        enrollment_id=payment_in.enrollment_id,
        stage=payment_in.stage,
        amount=payment_in.amount,
        customer_name=payment_in.customer_name,
        customer_email=payment_in.customer_email,
        customer_phone=payment_in.customer_phone,
    )
    logger.info("Initialized payment id=%s user=%s stage=%s", payment.id, payment.user_id, payment.stage)
    return schemas.PaymentInitialized(
        payment_id=payment.id,
        payment_reference=payment.payment_reference,
        checkout_url=payment.checkout_url,
        amount=payment.amount,
        expires_at=payment.expires_at,
    )


@app.get("/payments/verify/{payment_reference}", response_model=schemas.PaymentVerification)
def verify_payment(payment_reference: str, db: Session = Depends(get_db),
                   payment_engine: engine.PaymentEngine = Depends(get_engine)):
    result = payment_engine.verify_payment(db, payment_reference)
    return schemas.PaymentVerification(
        payment=schemas.PaymentOut.model_validate(result["payment"]),
        gateway_status=result["gateway_status"],
        payment_method=result["payment_method"],
        amount_paid=result["amount_paid"],
        applied=result["applied"],
    )


# Get payment by id, with its gateway transactions
@app.get("/payments/{payment_id}", response_model=schemas.PaymentDetail)
def get_payment(payment_id: int, db: Session = Depends(get_db)):
    payment, transactions = engine.get_payment_details(db, payment_id)
    return _payment_detail(payment, transactions)


# List payments with optional filters (user_id, status, stage)
@app.get("/payments", response_model=List[schemas.PaymentOut])
def list_payments(user_id: Optional[str] = Query(None), status: Optional[str] = Query(None),
                  stage: Optional[int] = Query(None), db: Session = Depends(get_db)):
    results = store.list_payments(db, user_id=user_id, status=status, stage=stage)
    return [schemas.PaymentOut.model_validate(p) for p in results]


@app.get("/enrollments/{enrollment_id}/summary", response_model=schemas.EnrollmentSummary)
def enrollment_summary(enrollment_id: str, db: Session = Depends(get_db)):
    return engine.enrollment_summary(db, enrollment_id)


@app.get("/webhooks/failed", response_model=List[schemas.WebhookLogOut])
def failed_webhooks(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return [schemas.WebhookLogOut.model_validate(log) for log in store.failed_webhook_logs(db, limit=limit)]


@app.post("/webhooks/replay", response_model=List[schemas.WebhookLogOut])
def replay_webhooks(limit: int = Query(config.WEBHOOK_REPLAY_BATCH_SIZE, ge=1, le=500),
                    db: Session = Depends(get_db),
                    processor: WebhookProcessor = Depends(get_webhook_processor)):
    return [schemas.WebhookLogOut.model_validate(log) for log in processor.replay_failed(db, limit=limit)]


# Gateway callbacks: acknowledged with 200 once the delivery is logged
@app.post("/webhooks/{provider}")
async def receive_webhook(provider: str, request: Request, db: Session = Depends(get_db),
                          processor: WebhookProcessor = Depends(get_webhook_processor)):
    if provider != MONNIFY_PROVIDER:
        raise ValidationError(f"Unsupported webhook provider: {provider}")
    raw_body = await request.body()
    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)
    log = await run_in_threadpool(processor.handle_inbound_event, db, raw_body, signature, provider=provider)
    logger.info("Webhook log=%s status=%s", log.id, log.status)
    return {"success": True}


@app.post("/reconciliation/run", response_model=schemas.ReconciliationResult)
def run_reconciliation(db: Session = Depends(get_db)):
    return {"expired": reconciliation.expire_stale_payments(db)}

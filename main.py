from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from db_models import AddContactRequest, FinalResponse, IdentifyRequest, LinkPrecedence
from db_setup import ContactStore, init_db
from errors import InvalidContact, ReconciliationError
from identity import resolve_identity
from log_setup import get_logger, setup_logging
from settings import get_settings

settings = get_settings()
setup_logging(settings)
init_db()

logger = get_logger(__name__)

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s", request.method, request.url.path, exc.message,
            extra={"code": exc.code},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_public_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error in %s %s", request.method, request.url.path, exc_info=exc
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "code": "internal.error"},
    )


def get_store():
    """One store connection per request."""
    store = ContactStore.open()
    try:
        yield store
    finally:
        store.close()


@app.get("/")
async def root():
    return {"message": "Contact reconciliation API is up"}


@app.get("/health")
async def health():
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, store: ContactStore = Depends(get_store)):
    view = resolve_identity(store, request.email, request.phoneNumber)
    return FinalResponse(contact=view)


@app.post("/add-contact")
def add_contact(request: AddContactRequest, store: ContactStore = Depends(get_store)):
    """Insert a raw contact row, e.g. to seed existing data."""
    if not request.email and not request.phoneNumber:
        raise InvalidContact("Either email or phoneNumber must be provided")

    if request.linkPrecedence == LinkPrecedence.PRIMARY:
        if request.linkedId is not None:
            raise InvalidContact("A primary contact cannot have a linkedId")
    else:
        if request.linkedId is None:
            raise InvalidContact("A secondary contact needs a linkedId")
        target = store.get(request.linkedId)
        if target is None or target.linkPrecedence != LinkPrecedence.PRIMARY:
            raise InvalidContact(f"linkedId {request.linkedId} is not a primary contact")

    if request.id is not None and store.get(request.id) is not None:
        raise InvalidContact(f"Contact {request.id} already exists")

    contact = store.create(
        email=request.email,
        phone=request.phoneNumber,
        linked_id=request.linkedId,
        precedence=request.linkPrecedence,
        contact_id=request.id,
    )
    return {"message": "Contact added successfully", "contact_id": contact.id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)

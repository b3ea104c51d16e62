import os
import sys
from typing import List, Optional
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from dotenv import load_dotenv
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException
from middleware import (
    ERROR_COUNT,
    SERVICE_NAME,
    BearerTokenVerifier,
    CredentialVerifier,
    Pipeline,
    default_pipeline,
)
from models import NotFound, UserStore, ValidationError
from schemas import ErrorResponse, ProblemDetails, UserCreate, UserResponse, UserUpdate

# Chargement des variables d'environnement
load_dotenv()

API_TOKEN = os.getenv("API_TOKEN", "your-secret-token")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "logs.json")


def configure_logging(level: str = LOG_LEVEL, log_file: Optional[str] = LOG_FILE) -> None:
    logger.remove()  # Supprime le handler par défaut
    logger.add(sys.stderr, level=level)
    if log_file:
        # Config logging JSON (niveaux INFO, WARNING, ERROR)
        logger.add(
            sink=log_file,
            format="{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {message} | {extra}",
            level=level,
            serialize=True,  # Format JSON
            rotation="1 day",  # Rotation quotidienne
        )


configure_logging()

router = APIRouter()


def get_store(request: Request) -> UserStore:
    return request.app.state.store


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def problem_response(exc: Optional[BaseException]) -> JSONResponse:
    problem = ProblemDetails(detail=str(exc) if exc is not None else None)
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(),
        media_type="application/problem+json",
    )


@router.get("/metrics")
async def metrics():
    """Endpoint /metrics compatible Prometheus"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/users", response_model=List[UserResponse])
async def get_users(store: UserStore = Depends(get_store)):
    logger.info("Fetching all users")
    return store.list()


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, store: UserStore = Depends(get_store)):
    logger.info(f"Fetching user {user_id}")
    try:
        return store.get(user_id)
    except NotFound:
        logger.warning(f"User {user_id} not found")
        ERROR_COUNT.labels(service=SERVICE_NAME, endpoint="/users/{user_id}", error_type="not_found").inc()
        return Response(status_code=404)


@router.post("/users", status_code=201, response_model=UserResponse)
async def create_user(user: UserCreate, response: Response, store: UserStore = Depends(get_store)):
    logger.info(f"Creating user: {user.name}")
    try:
        created = store.create(user.name, user.email)
    except ValidationError as exc:
        logger.warning(f"Rejected user creation: {exc}")
        ERROR_COUNT.labels(service=SERVICE_NAME, endpoint="/users", error_type="validation").inc()
        return error_response(400, str(exc))

    logger.info(f"User created with ID {created.id}")
    response.headers["Location"] = f"/users/{created.id}"
    return created


@router.put("/users/{user_id}", response_model=UserResponse)
async def update_user(user_id: int, user: UserUpdate, store: UserStore = Depends(get_store)):
    logger.info(f"Updating user {user_id}")
    try:
        return store.update(user_id, user.id, user.name, user.email)
    except ValidationError as exc:
        logger.warning(f"Rejected update of user {user_id}: {exc}")
        ERROR_COUNT.labels(service=SERVICE_NAME, endpoint="/users/{user_id}", error_type="validation").inc()
        return error_response(400, str(exc))
    except NotFound:
        logger.warning(f"User {user_id} not found")
        ERROR_COUNT.labels(service=SERVICE_NAME, endpoint="/users/{user_id}", error_type="not_found").inc()
        return Response(status_code=404)


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(user_id: int, store: UserStore = Depends(get_store)):
    logger.info(f"Deleting user {user_id}")
    try:
        store.delete(user_id)
    except NotFound:
        logger.warning(f"User {user_id} not found")
        ERROR_COUNT.labels(service=SERVICE_NAME, endpoint="/users/{user_id}", error_type="not_found").inc()
        return Response(status_code=404)
    return Response(status_code=204)


# Scénario de dysfonctionnement: exception non gérée, rattrapée par le pipeline
@router.get("/exception")
async def exception_endpoint():
    """
    Endpoint levant volontairement une exception non gérée.
    Utilisé pour tester le middleware de gestion des erreurs.
    """
    raise Exception("This is a test exception.")


def recorded_failure(request: Request) -> Optional[BaseException]:
    return getattr(request.state, "error", None)


@router.api_route("/error", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def error_endpoint(request: Request):
    """
    Rendu problem-details de la dernière erreur enregistrée pour la requête.
    Appelée directement, sans erreur enregistrée, le detail est null.
    """
    return problem_response(recorded_failure(request))


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    logger.warning(f"Invalid request on {request.url.path}: {details}")
    return error_response(400, f"Invalid request: {details}")


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail)).model_dump(),
        headers=getattr(exc, "headers", None),
    )


async def handle_unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    # Seules les erreurs qui ont échappé au pipeline arrivent ici
    logger.opt(exception=exc).error("Unhandled exception outside the middleware pipeline")
    request.state.error = exc
    return await error_endpoint(request)


def create_app(
    store: Optional[UserStore] = None,
    verifier: Optional[CredentialVerifier] = None,
    pipeline: Optional[Pipeline] = None,
) -> FastAPI:
    app = FastAPI(title="Users Service")
    app.state.store = store if store is not None else UserStore.seeded()

    if pipeline is None:
        pipeline = default_pipeline(verifier or BearerTokenVerifier(API_TOKEN))
    pipeline.install(app)

    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(Exception, handle_unhandled_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")
    logger.info(f"Starting Users Service on port {port}")
    import uvicorn
    uvicorn.run(app, host=host, port=port)

"""Error responses use one envelope:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<uuid>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from sesame.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from sesame.api.schemas import Envelope, ErrorBody
from sesame.service.errors import (
    ConflictError,
    ConsistencyError,
    InvalidCredentialError,
    NotFoundError,
    ReplayDetectedError,
    ValidationError,
    translate_storage_errors,
)
from sesame.storage.errors import ConstraintViolation, StorageError


class Body(BaseModel):
    count: int


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/invalid-credential")
    async def invalid_credential():
        raise InvalidCredentialError("magic_link_expired")

    @app.get("/replay")
    async def replay():
        raise ReplayDetectedError("cred", 5, 5)

    @app.get("/not-found")
    async def not_found():
        raise NotFoundError("passkey not found")

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("email already in use", detail={"field": "email"})

    @app.get("/consistency")
    async def consistency():
        raise ConsistencyError("session references a missing user", detail={"user_id": "u"})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("duplicate record", {"constraint": "x"})

    @app.get("/storage")
    async def storage():
        raise StorageError("database operation failed", {"operation": "get_user"})

    @app.post("/body")
    async def body(payload: Body):
        return {"ok": True}

    return app


@pytest.fixture
def client():
    return TestClient(_app())


def _error(response):
    data = response.json()
    assert data["status"] == "error"
    assert data["request_id"]
    return data["error"]


def test_invalid_credential_hides_reason(client):
    response = client.get("/invalid-credential")
    assert response.status_code == 401
    error = _error(response)
    assert error == {"code": "unauthorized", "message": "invalid credentials", "details": None}
    assert "expired" not in response.text


def test_replay_renders_like_invalid_credential(client):
    replay = client.get("/replay")
    invalid = client.get("/invalid-credential")
    assert replay.status_code == invalid.status_code == 401
    assert _error(replay) == _error(invalid)


@pytest.mark.parametrize(
    "path, status, code",
    [
        ("/not-found", 404, "not_found"),
        ("/conflict", 409, "conflict"),
        ("/consistency", 500, "server_error"),
        ("/constraint", 409, "conflict"),
        ("/storage", 500, "server_error"),
    ],
)
def test_status_and_code_mapping(client, path, status, code):
    response = client.get(path)
    assert response.status_code == status
    assert _error(response)["code"] == code


def test_storage_error_detail_is_not_exposed(client):
    error = _error(client.get("/storage"))
    assert error["message"] == "storage failure"
    assert error["details"] is None


def test_request_validation_is_400(client):
    response = client.post("/body", json={"count": "many"})
    assert response.status_code == 400
    error = _error(response)
    assert error["code"] == "validation_error"
    assert error["details"][0]["loc"] == ["body", "count"]


def test_status_code_table():
    assert _STATUS_TO_CODE[401] == "unauthorized"
    assert _error_code_for_status(418) == "server_error"


def test_error_body_rejects_unknown_code():
    with pytest.raises(PydanticValidationError):
        ErrorBody(code="teapot", message="no")
    envelope = Envelope(status="ok", data={"a": 1})
    assert envelope.error is None


def test_translate_storage_errors():
    with pytest.raises(ConflictError) as conflict:
        with translate_storage_errors("create_user"):
            raise ConstraintViolation("email already exists", {"field": "email"})
    assert conflict.value.detail == {"field": "email"}

    with pytest.raises(Exception) as internal:
        with translate_storage_errors("get_user"):
            raise StorageError("boom")
    assert internal.value.status_code == 500
    assert internal.value.detail == {"operation": "get_user"}

    # Service errors pass through untouched.
    with pytest.raises(ValidationError):
        with translate_storage_errors("noop"):
            raise ValidationError("bad")

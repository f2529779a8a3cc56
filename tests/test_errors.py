import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from workflowdebugger.errors import ApiError, register_error_handlers


class Item(BaseModel):
    name: str
    quantity: int


@pytest.fixture
def error_client():
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/boom")
    def boom():
        raise RuntimeError("database password is hunter2")

    @app.get("/slow-down")
    def slow_down():
        raise ApiError.too_many_requests(2.1, "Too many attempts")

    @app.post("/items")
    def create_item(item: Item):
        return item

    return TestClient(app, raise_server_exceptions=False)


def test_unhandled_errors_are_generic(error_client):
    res = error_client.get("/boom")

    assert res.status_code == 500
    assert res.json() == {"error": "Internal server error"}
    assert "hunter2" not in res.text


def test_rate_limit_errors_round_retry_after_up(error_client):
    res = error_client.get("/slow-down")

    assert res.status_code == 429
    assert res.headers["Retry-After"] == "3"
    assert res.json() == {"error": "Too many attempts", "code": "RATE_LIMITED"}


def test_missing_field_message(error_client):
    res = error_client.post("/items", json={"quantity": 1})

    assert res.status_code == 400
    assert res.json() == {"error": "name is required", "code": "VALIDATION_ERROR"}


def test_wrong_type_message(error_client):
    res = error_client.post("/items", json={"name": "widget", "quantity": "lots"})

    assert res.json()["error"] == "Invalid quantity"


def test_unknown_route_is_json(error_client):
    res = error_client.get("/nowhere")

    assert res.status_code == 404
    assert res.json() == {"error": "Not Found"}


def test_retry_after_never_below_one_second():
    assert ApiError.too_many_requests(0.2).headers["Retry-After"] == "1"

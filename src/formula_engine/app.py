from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from flask import Flask, abort, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .engine import ComputationEngine
from .environment import build_engine
from .errors import ConfigurationError, GeneratedCodeInvalidError, GenerationRequestError, UnknownVariableError
from .generation import ExternalFunctionAdapter, GenerationClient
from .resolver import solve_single_formula


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": error.description or "invalid request payload"}), 400
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(ConfigurationError)
    def handle_configuration_error(error: ConfigurationError) -> Any:
        app.logger.warning("configuration_rejected", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(UnknownVariableError)
    def handle_unknown_variable(error: UnknownVariableError) -> Any:
        app.logger.warning("unknown_variable", extra={"path": request.path, "variable_id": error.variable_id})
        return jsonify({"error": str(error)}), 404

    @app.errorhandler(GeneratedCodeInvalidError)
    def handle_generated_code_invalid(error: GeneratedCodeInvalidError) -> Any:
        app.logger.warning("generated_code_rejected", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 422

    @app.errorhandler(GenerationRequestError)
    def handle_generation_request_error(error: GenerationRequestError) -> Any:
        app.logger.warning("generation_request_failed", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 502

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False) or {}
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


@contextmanager
def _locked_engine(app: Flask) -> Iterator[ComputationEngine]:
    # one request at a time reads or writes the shared engine
    with app.extensions["formula_engine_lock"]:
        yield app.extensions["formula_engine"]


def _variables_payload(engine: ComputationEngine) -> dict[str, Any]:
    return {
        "strategy": engine.strategy,
        "stepMode": engine.step_mode,
        "variables": {variable_id: variable.to_dict() for variable_id, variable in engine.registry.get_variables().items()},
    }


def _require_variable(engine: ComputationEngine, variable_id: str) -> None:
    if variable_id not in engine.registry:
        raise UnknownVariableError(variable_id)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def create_engine_app(engine: ComputationEngine | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "formula-engine")
    _configure_error_handlers(app)
    if engine is None:
        engine = ComputationEngine(adapter=ExternalFunctionAdapter(GenerationClient.from_env()))
    app.extensions["formula_engine"] = engine
    app.extensions["formula_engine_lock"] = threading.Lock()

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.get("/api/variables")
    def list_variables() -> Any:
        with _locked_engine(app) as engine:
            return jsonify(_variables_payload(engine))

    @app.get("/api/debug")
    def debug_state() -> Any:
        with _locked_engine(app) as engine:
            return jsonify(engine.debug_state())

    @app.post("/api/environment")
    def load_environment() -> Any:
        config = _json_body()
        with _locked_engine(app) as current:
            loaded = build_engine(config, adapter=current.adapter)
            app.extensions["formula_engine"] = loaded
            payload = _variables_payload(loaded)
        app.logger.info(
            "environment_replaced",
            extra={"strategy": loaded.strategy, "variables": len(loaded.registry)},
        )
        return jsonify(payload), 201

    @app.post("/api/variables/<variable_id>/value")
    def set_variable_value(variable_id: str) -> Any:
        body = _json_body()
        value = body.get("value")
        with _locked_engine(app) as engine:
            _require_variable(engine, variable_id)
            if not (_is_number(value) or isinstance(value, str)):
                abort(400, description="value must be a number or a set element")
            engine.registry.set_value(variable_id, value)
            payload = _variables_payload(engine)
        app.logger.info("variable_value_changed", extra={"variable_id": variable_id})
        return jsonify(payload)

    @app.post("/api/variables/<variable_id>/set")
    def set_variable_set(variable_id: str) -> Any:
        body = _json_body()
        values = body.get("values")
        with _locked_engine(app) as engine:
            _require_variable(engine, variable_id)
            if not isinstance(values, list) or not all(_is_number(item) or isinstance(item, str) for item in values):
                abort(400, description="values must be a list of numbers or strings")
            engine.registry.set_set_value(variable_id, values)
            payload = _variables_payload(engine)
        app.logger.info("variable_set_changed", extra={"variable_id": variable_id, "size": len(values)})
        return jsonify(payload)

    @app.post("/api/variables/<variable_id>/role")
    def set_variable_role(variable_id: str) -> Any:
        body = _json_body()
        role = body.get("role")
        with _locked_engine(app) as engine:
            _require_variable(engine, variable_id)
            if not isinstance(role, str):
                abort(400, description="role is required")
            engine.registry.set_role(variable_id, role)
            return jsonify(_variables_payload(engine))

    @app.post("/api/strategy")
    def set_strategy() -> Any:
        body = _json_body()
        strategy = body.get("strategy")
        if not isinstance(strategy, str):
            abort(400, description="strategy is required")
        with _locked_engine(app) as engine:
            engine.set_strategy(strategy)
            return jsonify(_variables_payload(engine))

    @app.post("/api/generated-function")
    def install_generated_function() -> Any:
        body = _json_body()
        text = body.get("text")
        if not isinstance(text, str) or not text.strip():
            abort(400, description="text is required")
        with _locked_engine(app) as engine:
            engine.install_generated_function(text)
            return jsonify({**_variables_payload(engine), "generatedCode": engine.last_generated_code})

    @app.post("/api/generate")
    def generate_function() -> Any:
        with _locked_engine(app) as engine:
            engine.request_generated_function()
            return jsonify({**_variables_payload(engine), "generatedCode": engine.last_generated_code})

    @app.post("/api/solve")
    def solve() -> Any:
        body = _json_body()
        formula = body.get("formula")
        solve_for = body.get("solve_for")
        values = body.get("values") or {}
        if not isinstance(formula, str) or not isinstance(solve_for, str) or not isinstance(values, dict):
            abort(400, description="formula, solve_for and values are required")
        result = solve_single_formula(formula, values, solve_for)
        return jsonify({"solve_for": solve_for, "value": result})

    return app

"""JSON API for the feature conductor."""

import json

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from feature_conductor.config import get_config
from feature_conductor.core import checkpoints as checkpoints_mod
from feature_conductor.core import features as features_mod
from feature_conductor.core import queue as queue_mod
from feature_conductor.core import settings as settings_mod
from feature_conductor.core import workflow as workflow_mod
from feature_conductor.core.errors import ErrorKind, Result
from feature_conductor.core.serialize import feature_summary, result_dict, to_data
from feature_conductor.db.engine import init_db

_STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONCURRENCY_CONFLICT: 409,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.INVALID_TRANSITION: 422,
    ErrorKind.CYCLIC_DEPENDENCY: 422,
    ErrorKind.NO_HISTORY: 422,
}


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _respond(result: Result) -> JSONResponse:
    status_code = 200 if result.success else _STATUS_CODES.get(result.error_kind, 400)
    return JSONResponse(result_dict(result), status_code=status_code)


async def _body(request: Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return {}
    return body if isinstance(body, dict) else {}


def _feature_key(request: Request) -> tuple[str, str]:
    return request.path_params["repo_name"], request.path_params["feature_slug"]


# ── Features ──────────────────────────────────────────────────────────────────


async def api_list_features(request: Request):
    repo = request.query_params.get("repo")
    db = _get_db()
    try:
        return JSONResponse([feature_summary(ts) for ts in features_mod.list_features(db, repo)])
    finally:
        db.close()


async def api_create_feature(request: Request):
    body = await _body(request)
    if not body.get("feature_slug"):
        return JSONResponse({"error": "feature_slug is required"}, status_code=400)
    db = _get_db()
    try:
        task_set = features_mod.create_feature(
            db,
            body["feature_slug"],
            body.get("feature_name"),
            body.get("repo_name", "default"),
            body.get("tasks"),
            body.get("description", ""),
        )
        return JSONResponse(to_data(task_set), status_code=201)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    finally:
        db.close()


async def api_get_feature(request: Request):
    repo, slug = _feature_key(request)
    db = _get_db()
    try:
        task_set = features_mod.get_feature(db, slug, repo)
        if not task_set:
            return JSONResponse({"error": "Feature not found"}, status_code=404)
        return JSONResponse(to_data(task_set))
    finally:
        db.close()


async def api_update_feature(request: Request):
    repo, slug = _feature_key(request)
    body = await _body(request)
    db = _get_db()
    try:
        task_set = features_mod.update_feature(
            db, slug, repo, body.get("feature_name"), body.get("description")
        )
        if not task_set:
            return JSONResponse({"error": "Feature not found"}, status_code=404)
        return JSONResponse(feature_summary(task_set))
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    finally:
        db.close()


async def api_feature_plan(request: Request):
    repo, slug = _feature_key(request)
    db = _get_db()
    try:
        return _respond(workflow_mod.get_execution_plan(db, slug, repo))
    finally:
        db.close()


async def api_feature_summary(request: Request):
    repo, slug = _feature_key(request)
    db = _get_db()
    try:
        return _respond(workflow_mod.review_summary(db, slug, repo))
    finally:
        db.close()


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_get_task(request: Request):
    repo, slug = _feature_key(request)
    db = _get_db()
    try:
        return _respond(workflow_mod.get_task_status(db, slug, request.path_params["task_id"], repo))
    finally:
        db.close()


async def api_review_task(request: Request):
    repo, slug = _feature_key(request)
    body = await _body(request)
    if not isinstance(body.get("details") or {}, dict):
        return JSONResponse({"error": "details must be an object"}, status_code=400)
    db = _get_db()
    try:
        return _respond(workflow_mod.review_task(
            db, slug, request.path_params["task_id"],
            body.get("role", ""), body.get("decision", ""), body.get("notes", ""),
            body.get("details"), repo_name=repo,
        ))
    finally:
        db.close()


async def api_transition_task(request: Request):
    repo, slug = _feature_key(request)
    body = await _body(request)
    if not isinstance(body.get("metadata") or {}, dict):
        return JSONResponse({"error": "metadata must be an object"}, status_code=400)
    db = _get_db()
    try:
        return _respond(workflow_mod.transition_task(
            db, slug, request.path_params["task_id"],
            body.get("from_status", ""), body.get("to_status", ""), body.get("actor", ""),
            body.get("notes", ""), body.get("metadata"), repo_name=repo,
        ))
    finally:
        db.close()


async def api_verify_criterion(request: Request):
    repo, slug = _feature_key(request)
    body = await _body(request)
    verified = body.get("verified", True)
    if not isinstance(verified, bool):
        return JSONResponse({"error": "verified must be a boolean"}, status_code=400)
    db = _get_db()
    try:
        return _respond(workflow_mod.update_acceptance_criteria(
            db, slug, request.path_params["task_id"], request.path_params["criterion_id"],
            verified, repo,
        ))
    finally:
        db.close()


async def api_batch_criteria(request: Request):
    repo, slug = _feature_key(request)
    body = await _body(request)
    updates = body.get("updates")
    if not isinstance(updates, list) or not all(isinstance(u, dict) for u in updates):
        return JSONResponse({"error": "updates must be a list of objects"}, status_code=400)
    db = _get_db()
    try:
        return _respond(workflow_mod.batch_update_acceptance_criteria(db, slug, updates, repo))
    finally:
        db.close()


async def api_rollback_task(request: Request):
    repo, slug = _feature_key(request)
    db = _get_db()
    try:
        return _respond(checkpoints_mod.rollback_last_decision(
            db, slug, request.path_params["task_id"], repo
        ))
    finally:
        db.close()


# ── Checkpoints ───────────────────────────────────────────────────────────────


async def api_checkpoints(request: Request):
    repo, slug = _feature_key(request)
    db = _get_db()
    try:
        if request.method == "POST":
            body = await _body(request)
            return _respond(checkpoints_mod.save_checkpoint(
                db, slug, body.get("description", ""), repo
            ))
        return JSONResponse(to_data(checkpoints_mod.list_checkpoints(db, slug, repo)))
    finally:
        db.close()


async def api_restore_checkpoint(request: Request):
    repo, slug = _feature_key(request)
    db = _get_db()
    try:
        return _respond(checkpoints_mod.restore_checkpoint(
            db, slug, request.path_params["checkpoint_id"], repo
        ))
    finally:
        db.close()


# ── Queue ─────────────────────────────────────────────────────────────────────


async def api_queue(request: Request):
    db = _get_db()
    try:
        if request.method == "POST":
            body = await _body(request)
            if not body.get("repo_name") or not body.get("feature_slug"):
                return JSONResponse(
                    {"error": "repo_name and feature_slug are required"}, status_code=400
                )
            tool = body.get("cli_tool") or settings_mod.get_queue_settings(db).cli_tool
            item = queue_mod.enqueue_item(db, body["repo_name"], body["feature_slug"], tool)
            return JSONResponse(to_data(item), status_code=201)

        items = queue_mod.list_items(
            db,
            repo_name=request.query_params.get("repo"),
            feature_slug=request.query_params.get("feature"),
            status=request.query_params.get("status"),
        )
        return JSONResponse(to_data(items))
    finally:
        db.close()


async def api_queue_stats(request: Request):
    db = _get_db()
    try:
        return JSONResponse(queue_mod.queue_stats(db))
    finally:
        db.close()


async def api_queue_stale(request: Request):
    try:
        minutes = int(request.query_params.get("minutes", "60"))
    except ValueError:
        return JSONResponse({"error": "minutes must be an integer"}, status_code=400)
    db = _get_db()
    try:
        return JSONResponse(to_data(queue_mod.list_stale_items(db, minutes)))
    finally:
        db.close()


async def api_queue_item(request: Request):
    item_id = request.path_params["item_id"]
    db = _get_db()
    try:
        if request.method == "DELETE":
            return _respond(queue_mod.cancel_item(db, item_id))
        item = queue_mod.get_item(db, item_id)
        if not item:
            return JSONResponse({"error": "Queue item not found"}, status_code=404)
        return JSONResponse(to_data(item))
    finally:
        db.close()


async def api_queue_retry(request: Request):
    db = _get_db()
    try:
        return _respond(queue_mod.reenqueue_item(db, request.path_params["item_id"]))
    finally:
        db.close()


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    feature = "/api/features/{repo_name}/{feature_slug}"
    routes = [
        Route("/api/features", api_list_features, methods=["GET"]),
        Route("/api/features", api_create_feature, methods=["POST"]),
        Route(feature, api_get_feature, methods=["GET"]),
        Route(feature, api_update_feature, methods=["PATCH"]),
        Route(f"{feature}/criteria", api_batch_criteria, methods=["POST"]),
        Route(f"{feature}/plan", api_feature_plan),
        Route(f"{feature}/summary", api_feature_summary),
        Route(f"{feature}/tasks/{{task_id}}", api_get_task),
        Route(f"{feature}/tasks/{{task_id}}/review", api_review_task, methods=["POST"]),
        Route(f"{feature}/tasks/{{task_id}}/transition", api_transition_task, methods=["POST"]),
        Route(f"{feature}/tasks/{{task_id}}/rollback", api_rollback_task, methods=["POST"]),
        Route(
            f"{feature}/tasks/{{task_id}}/criteria/{{criterion_id}}",
            api_verify_criterion,
            methods=["POST"],
        ),
        Route(f"{feature}/checkpoints", api_checkpoints, methods=["GET", "POST"]),
        Route(
            f"{feature}/checkpoints/{{checkpoint_id:int}}/restore",
            api_restore_checkpoint,
            methods=["POST"],
        ),
        Route("/api/queue", api_queue, methods=["GET", "POST"]),
        Route("/api/queue/stats", api_queue_stats),
        Route("/api/queue/stale", api_queue_stale),
        Route("/api/queue/{item_id:int}", api_queue_item, methods=["GET", "DELETE"]),
        Route("/api/queue/{item_id:int}/retry", api_queue_retry, methods=["POST"]),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)

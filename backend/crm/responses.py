# Overview: JSON envelope helpers shared by every route.

"""
Success: {"success": true, "data": ..., "message"?: ...}
Failure: {"success": false, "message": ..., "errors"?: [{"field", "message"}], "details"?: {...}}
"""

from flask import jsonify


def ok(data=None, status: int = 200, message: str | None = None):
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return jsonify(body), status


def fail(message: str, status: int = 400, errors: list | None = None, details: dict | None = None):
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    if details:
        body["details"] = details
    return jsonify(body), status

"""OpenAPI metadata and customization utilities.

Provides a helper to enrich the generated OpenAPI schema with:
- Tags metadata
- Bearer (JWT) security scheme, optional on admission-protected routes
- Documented 403/429 responses for routes behind the admission gate

This keeps documentation concerns decoupled from the app factory.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_DENIAL_RESPONSES: Dict[str, Dict[str, Any]] = {
    "403": {"description": "Client IP is deny-listed."},
    "429": {
        "description": (
            "Rate limit exceeded or caller blocked. Body carries retryAfter "
            "(seconds); headers carry Retry-After and X-RateLimit-*."
        )
    },
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add metadata and security.

    - Injects components.securitySchemes for bearer auth
    - Marks non-health operations with optional bearer security; anonymous
      callers are limited by IP only
    - Adds tags metadata if not present
    """

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema
        schema = original_openapi()

        # Components / security scheme
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "BearerAuth",
            {
                "type": "http",
                "scheme": "bearer",
                "bearerFormat": "JWT",
                "description": (
                    "Optional. Authenticated callers get a per-user limit; "
                    "the admin role bypasses rate checks."
                ),
            },
        )

        # Tags metadata
        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {
                "name": "Admission",
                "description": "Routes protected by the admission gate.",
            },
            {
                "name": "Health",
                "description": "Liveness and store status.",
            },
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        paths = schema.get("paths", {})
        for path, methods in paths.items():
            is_health = path.endswith("/health")
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                if is_health:
                    method_obj["security"] = []
                    continue
                # Empty requirement keeps the bearer token optional
                method_obj["security"] = [{"BearerAuth": []}, {}]
                responses = method_obj.setdefault("responses", {})
                for status, body in _DENIAL_RESPONSES.items():
                    responses.setdefault(status, body)

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]

"""
エラー分類

すべてのサービスで共通の例外。各例外は安定したエラーコードと HTTP ステータスを持ち、
FastAPI の例外ハンドラが {"error": code, "detail": message, ...} に変換する。
Saga Service の HTTP クライアントは同じボディから例外を復元する。
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class FulfillmentError(Exception):
    code = "fulfillment_error"
    status_code = 500

    def __init__(self, detail: str, **extra) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail, **self.extra}


class ValidationError(FulfillmentError):
    """入力不正。副作用が起きる前に拒否される。"""

    code = "validation_error"
    status_code = 422

    def __init__(self, detail: str, errors: list[dict] | None = None) -> None:
        super().__init__(detail, errors=errors or [])
        self.errors = errors or []


class InvalidTransition(ValidationError):
    """遷移表に存在しない状態遷移"""

    code = "invalid_transition"


class ConflictError(FulfillmentError):
    """楽観的ガードに負けた。呼び出し側は何もしない (リトライしない)。"""

    code = "conflict"
    status_code = 409


class NotFoundError(FulfillmentError):
    code = "not_found"
    status_code = 404


class SellerNotFound(NotFoundError):
    code = "seller_not_found"


class ReservationPartialFailure(FulfillmentError):
    """要求した本の一部しか確保できなかった"""

    code = "reservation_partial_failure"
    status_code = 409

    def __init__(
        self,
        detail: str,
        unavailable_book_ids: list[str],
        failures: list[dict] | None = None,
    ) -> None:
        super().__init__(
            detail,
            unavailable_book_ids=unavailable_book_ids,
            failures=failures or [],
        )
        self.unavailable_book_ids = unavailable_book_ids
        self.failures = failures or []


class CollaboratorFailure(FulfillmentError):
    """配送・通知・決済などの外部呼び出しの失敗。状態遷移は巻き戻さない。"""

    code = "collaborator_failure"
    status_code = 502

    def __init__(self, collaborator: str, detail: str) -> None:
        super().__init__(detail, collaborator=collaborator)
        self.collaborator = collaborator


_BY_CODE = {
    cls.code: cls
    for cls in (
        ValidationError,
        InvalidTransition,
        ConflictError,
        NotFoundError,
        SellerNotFound,
    )
}


def from_response_body(body: dict, status_code: int) -> FulfillmentError:
    """エラーボディから例外を復元する (Saga Service のクライアント用)。"""
    code = body.get("error")
    detail = body.get("detail") or f"HTTP {status_code}"
    if not isinstance(detail, str):
        detail = str(detail)
    if code == ReservationPartialFailure.code:
        return ReservationPartialFailure(
            detail, body.get("unavailable_book_ids", []), body.get("failures")
        )
    cls = _BY_CODE.get(code)
    if cls is None:
        if status_code == 404:
            cls = NotFoundError
        elif status_code == 409:
            cls = ConflictError
        elif status_code == 422:
            cls = ValidationError
        else:
            return FulfillmentError(detail)
    if issubclass(cls, ValidationError):
        return cls(detail, body.get("errors"))
    return cls(detail)


def install_error_handler(app: FastAPI) -> None:
    """FulfillmentError を JSON レスポンスに変換するハンドラを登録する。"""

    @app.exception_handler(FulfillmentError)
    async def _handle(_request: Request, exc: FulfillmentError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

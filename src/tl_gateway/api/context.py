"""FastAPI dependency: get_operator_context.

Authentication happens upstream; this service trusts the gateway-supplied
tenant and actor headers.

Usage in any router:
    from src.tl_gateway.api.context import OperatorContext, get_operator_context

    @router.get("/scoped")
    async def scoped(ctx: OperatorContext = Depends(get_operator_context)):
        ...
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Header

from src.tl_common.errors import MissingCompanyError


@dataclass(frozen=True)
class OperatorContext:
    company_id: str
    user_id: str | None = None


async def get_operator_context(
    x_company_id: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
) -> OperatorContext:
    """Raises MissingCompanyError (HTTP 400) when X-Company-Id is absent or blank."""
    company_id = (x_company_id or "").strip()
    if not company_id:
        raise MissingCompanyError()
    return OperatorContext(company_id=company_id, user_id=(x_user_id or "").strip() or None)

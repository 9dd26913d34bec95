"""Conversion of router results to HTTP responses."""

from sqlalchemy.ext.asyncio import AsyncSession

from account_trust.core.errors import ErrorKind, api_error_for
from account_trust.core.responses import DataResponse
from account_trust.services.verification import FlowResult


async def respond(db: AsyncSession, result: FlowResult) -> DataResponse[dict]:
    """Commit the flow's writes and render the result.

    Failed results are committed too (except TRANSIENT, which the router
    already rolled back) so cleanup such as deleting an expired token
    persists before the error is raised.

    Raises:
        APIError: The failure mapped to its HTTP status.
    """
    if result.error is not ErrorKind.TRANSIENT:
        await db.commit()
    if result.ok:
        return DataResponse(data={"message": result.message, **result.data})
    raise api_error_for(
        result.error or ErrorKind.TRANSIENT,
        result.message,
        retry_after=result.data.get("retry_after"),
    )

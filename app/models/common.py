"""Response bodies shared by the routers."""

from pydantic import BaseModel


class AcceptedResponse(BaseModel):
    """Body of a 202: the request was understood but no new work was started."""

    message: str


class ErrorResponse(BaseModel):
    """Body FastAPI produces for ``HTTPException``; declared for the OpenAPI docs."""

    detail: str

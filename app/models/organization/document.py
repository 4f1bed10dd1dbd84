from __future__ import annotations

from pydantic import BaseModel


class LanguageRef(BaseModel):
    """A language known to the user, or a candidate the user may create.

    ``id`` is ``None`` exactly when ``is_candidate`` is true.
    """

    id: str | None = None
    name: str
    is_candidate: bool = False


class LicenseRef(BaseModel):
    id: str | None = None
    identifier: str
    name: str | None = None
    is_candidate: bool = False

from typing import Optional
from pydantic import BaseModel, ConfigDict


class UserCreate(BaseModel):
    name: str
    email: str


class UserUpdate(BaseModel):
    id: int = 0  # absent dans le body -> ne correspond jamais à l'ID de l'URL
    name: str
    email: str


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str


class ErrorResponse(BaseModel):
    error: str


class ProblemDetails(BaseModel):
    type: str = "https://tools.ietf.org/html/rfc9110#section-15.6.1"
    title: str = "An error occurred while processing your request."
    status: int = 500
    detail: Optional[str] = None

from pydantic import BaseModel, Field


class LoginIn(BaseModel):
    email: str = Field(..., max_length=320, examples=["owner@example.com"])
    password: str = Field(..., min_length=1, max_length=128)


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int

from pydantic import BaseModel, EmailStr, Field


class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    company_id: str | None = None
    role: str | None = None


class LoginRequest(BaseModel):
    username: EmailStr
    password: str


class RegisterRequest(BaseModel):
    company_name: str = Field(min_length=1, max_length=200)
    company_slug: str = Field(min_length=1, max_length=100)
    admin_full_name: str
    admin_email: EmailStr
    admin_password: str = Field(min_length=6)
    tax_id: str | None = None


class RefreshRequest(BaseModel):
    refresh_token: str

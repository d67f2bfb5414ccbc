"""
Authentication and authorization handler for the fulfillment API
Tokens are issued by the identity service; this module only verifies them
"""

from datetime import datetime, timedelta
from typing import Optional
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from fulfillment.config import settings

ALGORITHM = "HS256"
ROLES = ("patient", "doctor", "pharmacy", "courier", "chw", "admin")

security = HTTPBearer()


class AuthHandler:
    """Handles token creation and verification"""

    def __init__(self, secret_key: Optional[str] = None):
        self.secret_key = secret_key or settings.secret_key

    def create_access_token(self, data: dict, expires_delta: Optional[timedelta] = None):
        """Create a JWT access token"""
        to_encode = data.copy()
        if expires_delta:
            expire = datetime.utcnow() + expires_delta
        else:
            expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)

        to_encode.update({"exp": expire})
        encoded_jwt = jwt.encode(to_encode, self.secret_key, algorithm=ALGORITHM)
        return encoded_jwt

    def verify_token(self, token: str) -> dict:
        """Verify and decode a JWT token"""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[ALGORITHM])
            return payload
        except JWTError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )


auth_handler = AuthHandler()


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Dependency to get current authenticated user"""
    token = credentials.credentials
    payload = auth_handler.verify_token(token)

    user_id: str = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return {
        "user_id": user_id,
        "role": role,
        "name": payload.get("name"),
    }


# Role-based access control
class RoleChecker:
    """Check user roles for authorization"""

    def __init__(self, allowed_roles: list):
        self.allowed_roles = allowed_roles

    def __call__(self, user: dict = Depends(get_current_user)):
        if user["role"] not in self.allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Operation not permitted"
            )
        return user


# Common role checkers
admin_required = RoleChecker(["admin"])
any_user = RoleChecker(list(ROLES))
patient_required = RoleChecker(["patient"])
doctor_required = RoleChecker(["doctor"])
pharmacy_required = RoleChecker(["pharmacy"])
pharmacy_or_admin = RoleChecker(["pharmacy", "admin"])
courier_required = RoleChecker(["courier", "admin"])
delivery_confirmer_required = RoleChecker(["courier", "pharmacy", "admin"])
verifier_required = RoleChecker(["pharmacy", "doctor", "admin"])

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from settlement.config import BACK_OFFICE_ROLES, JWT_ALGORITHM, JWT_SECRET


def verify_token(authorization: str = Header(...)):
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_back_office(claims: dict = Depends(verify_token)):
    if claims.get("role") not in BACK_OFFICE_ROLES:
        raise HTTPException(status_code=403, detail="Back-office role required")
    return claims


def can_view_company(claims: dict, company_id: int) -> bool:
    """Back-office staff see every company; a seller only their own."""
    if claims.get("role") in BACK_OFFICE_ROLES:
        return True
    return str(claims.get("company_id")) == str(company_id)

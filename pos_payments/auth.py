import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi import Header, HTTPException
from jose import jwt, JWTError

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def current_store_id(authorization: str = Header(...)) -> str:
    """Store id of the signed-in staff member, from the ``storeId`` claim."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    store_id = claims.get("storeId")
    if not store_id:
        raise HTTPException(status_code=401, detail="Token carries no store")
    return store_id

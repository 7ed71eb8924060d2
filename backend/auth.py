from fastapi import HTTPException, Depends, APIRouter, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from google.oauth2 import id_token
from google.auth.transport import requests
import os
import uuid
from urllib.parse import quote
from dotenv import load_dotenv
import jwt
from datetime import datetime, timedelta, timezone
import logging
import database
from store import sessions
import traceback
from pydantic import BaseModel
from typing import Optional
from models import User

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

# Token settings
GOOGLE_CLIENT_ID = os.getenv('GOOGLE_CLIENT_ID')
JWT_SECRET = os.getenv('JWT_SECRET', 'dev-only-secret-change-me-in-production')
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv('ACCESS_TOKEN_EXPIRE_MINUTES', '30'))

# OAuth2 scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

router = APIRouter()


class GoogleCredential(BaseModel):
    credential: str


class Token(BaseModel):
    access_token: str
    token_type: str
    user: Optional[User] = None


class UserCreate(BaseModel):
    email: str
    password: str
    name: Optional[str] = None
    dob: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    dob: Optional[str] = None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def issue_token(user: User) -> dict:
    """Open a fresh session for the user and hand back a bearer token."""
    sessions.open(user)
    access_token = create_access_token(
        data={"sub": user.id}, expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return {"access_token": access_token, "token_type": "bearer", "user": user}


async def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except jwt.PyJWTError:
        raise credentials_exception
    user = database.get_user_by_id(user_id)
    if user is None:
        raise credentials_exception
    return User(**user)


def default_avatar(email: str) -> str:
    return f"https://api.dicebear.com/7.x/avataaars/svg?seed={quote(email)}"


@router.post("/signup", response_model=Token)
async def signup(user_data: UserCreate):
    try:
        email = user_data.email.strip().lower()
        user = database.create_user(
            user_id=f"u-{uuid.uuid4().hex[:9]}",
            email=email,
            password=user_data.password,
            name=user_data.name or email.split('@')[0],
            dob=user_data.dob,
            avatar=default_avatar(email),
        )
        logger.info(f"Created user {user['id']}")
        return issue_token(User(**user))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except Exception as e:
        logger.error(f"Error during signup: {str(e)}")
        logger.error(traceback.format_exc())
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred during signup"
        )


@router.post("/login", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends()):
    try:
        logger.info(f"Login attempt for user: {form_data.username}")
        user = database.get_user_by_email(form_data.username)
        if not user or not database.verify_password(form_data.password, user["password_hash"]):
            logger.warning(f"Login failed for user - {form_data.username}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Incorrect email or password",
                headers={"WWW-Authenticate": "Bearer"},
            )

        logger.info(f"Login successful for user: {form_data.username}")
        return issue_token(User(**database.get_user_by_id(user["id"])))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Login error: {str(e)}")
        logger.error(traceback.format_exc())
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred during login"
        )


@router.post("/google", response_model=Token)
async def google_sign_in(request: GoogleCredential):
    """Sign in with a Google Identity Services ID token, creating the account on first use."""
    try:
        idinfo = id_token.verify_oauth2_token(
            request.credential,
            requests.Request(),
            GOOGLE_CLIENT_ID
        )
    except ValueError as e:
        logger.warning(f"Google token rejected: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Google credential",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        logger.info(f"Verified Google ID token for user: {idinfo['email']}")
        existing = database.get_user_by_email(idinfo["email"])
        if existing:
            user = database.get_user_by_id(existing["id"])
        else:
            logger.info(f"Creating new user: {idinfo['email']}")
            user = database.create_user(
                user_id=f"g-{idinfo['sub']}",
                email=idinfo["email"],
                name=idinfo.get("name", ""),
                avatar=idinfo.get("picture"),
                google_id=idinfo["sub"],
            )
        return issue_token(User(**user))
    except Exception as e:
        logger.error(f"Error in Google sign-in: {str(e)}")
        logger.error(traceback.format_exc())
        raise HTTPException(
            status_code=400,
            detail=f"Authentication failed: {str(e)}"
        )


@router.get("/me", response_model=User)
async def read_profile(current_user: User = Depends(get_current_user)):
    return current_user


@router.put("/me", response_model=User)
async def update_profile(update: ProfileUpdate, current_user: User = Depends(get_current_user)):
    user = User(**database.update_user(current_user.id, name=update.name, dob=update.dob))
    sessions.get(user)
    return user


@router.post("/logout")
async def logout(current_user: User = Depends(get_current_user)):
    sessions.close(current_user.id)
    logger.info(f"User {current_user.id} logged out")
    return {"success": True}

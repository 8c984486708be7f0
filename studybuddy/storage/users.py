import base64
import hashlib
import hmac
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date

from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from studybuddy.core.config import Settings
from studybuddy.core.errors import (
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from studybuddy.core.security import hash_password, verify_password
from studybuddy.models.users import User
from studybuddy.schemas.users import SignupIn, UserOut
from studybuddy.storage.sql import storage_errors

logger = logging.getLogger(__name__)

SUPER_ADMIN_ATTRIBUTE = "custom:is_super_admin"


class UserStore(ABC):
    def __init__(self, settings: Settings):
        self.settings = settings

    def _is_listed_super_admin(self, email: str) -> bool:
        return email.strip().lower() in self.settings.super_admin_emails

    @abstractmethod
    def create(self, signup: SignupIn) -> UserOut: ...

    @abstractmethod
    def authenticate(self, email: str, password: str) -> UserOut | None: ...

    @abstractmethod
    def get(self, user_id: str) -> UserOut: ...

    @abstractmethod
    def get_by_email(self, email: str) -> UserOut | None: ...

    @abstractmethod
    def list_all(self) -> list[UserOut]: ...

    @abstractmethod
    def promote(self, user_id: str) -> UserOut: ...

    def display_info(self, user_ids: set[str]) -> dict[str, UserOut]:
        """Resolve many users at once; unknown ids are skipped."""
        found: dict[str, UserOut] = {}
        for user_id in user_ids:
            try:
                found[user_id] = self.get(user_id)
            except NotFoundError:
                logger.info("User %s referenced by a group no longer exists", user_id)
        return found


class SqlUserStore(UserStore):
    def __init__(self, session: Session, settings: Settings):
        super().__init__(settings)
        self.session = session

    def _to_out(self, user: User) -> UserOut:
        out = UserOut.model_validate(user)
        if self._is_listed_super_admin(user.email):
            out.is_super_admin = True
        return out

    def _find_by_email(self, email: str) -> User | None:
        return self.session.execute(
            select(User).where(User.email == email.strip().lower())
        ).scalar_one_or_none()

    def create(self, signup: SignupIn) -> UserOut:
        email = signup.email.strip().lower()
        with storage_errors(self.session, "create the account"):
            if self._find_by_email(email) is not None:
                raise ConflictError("User already exists")
            user = User(
                user_id=uuid.uuid4().hex,
                email=email,
                password_hash=hash_password(signup.password),
                first_name=signup.first_name,
                last_name=signup.last_name,
                date_of_birth=signup.date_of_birth,
                phone_number=signup.phone_number,
                is_super_admin=self._is_listed_super_admin(email),
            )
            try:
                with self.session.begin_nested():
                    self.session.add(user)
            except IntegrityError as exc:
                raise ConflictError("User already exists") from exc
            self.session.commit()
            self.session.refresh(user)
            logger.info("Created account %s", user.user_id)
            return self._to_out(user)

    def authenticate(self, email: str, password: str) -> UserOut | None:
        with storage_errors(self.session, "sign in"):
            user = self._find_by_email(email)
        if (
            not user
            or not user.password_hash
            or not verify_password(password, user.password_hash)
        ):
            return None
        return self._to_out(user)

    def get(self, user_id: str) -> UserOut:
        with storage_errors(self.session, "load the user"):
            user = self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return self._to_out(user)

    def get_by_email(self, email: str) -> UserOut | None:
        with storage_errors(self.session, "load the user"):
            user = self._find_by_email(email)
        return self._to_out(user) if user else None

    def list_all(self) -> list[UserOut]:
        with storage_errors(self.session, "list users"):
            users = self.session.execute(
                select(User).order_by(User.created_at, User.email)
            ).scalars()
            return [self._to_out(u) for u in users]

    def promote(self, user_id: str) -> UserOut:
        with storage_errors(self.session, "promote the user"):
            user = self.session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            user.is_super_admin = True
            self.session.commit()
            logger.info("Promoted %s to super admin", user_id)
            return self._to_out(user)


def _attributes(raw: list[dict]) -> dict[str, str]:
    return {attr["Name"]: attr["Value"] for attr in raw}


class CognitoUserStore(UserStore):
    """Accounts kept in a Cognito user pool; the pool's username is the user id."""

    def __init__(self, client: BaseClient, settings: Settings):
        super().__init__(settings)
        self.client = client
        self.user_pool_id = settings.cognito_user_pool_id
        self.client_id = settings.cognito_client_id
        self.client_secret = settings.cognito_client_secret

    def _secret_hash(self, username: str) -> str | None:
        if not self.client_secret:
            return None
        digest = hmac.new(
            self.client_secret.encode("utf-8"),
            (username + self.client_id).encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("utf-8")

    def _to_out(self, username: str, raw_attributes: list[dict], **extra) -> UserOut:
        attributes = _attributes(raw_attributes)
        email = attributes.get("email", "")
        birthdate = attributes.get("birthdate")
        return UserOut(
            user_id=username,
            email=email,
            first_name=attributes.get("given_name", ""),
            last_name=attributes.get("family_name", ""),
            date_of_birth=date.fromisoformat(birthdate) if birthdate else None,
            phone_number=attributes.get("phone_number"),
            is_super_admin=(
                attributes.get(SUPER_ADMIN_ATTRIBUTE) == "true"
                or self._is_listed_super_admin(email)
            ),
            created_at=extra.get("UserCreateDate"),
            updated_at=extra.get("UserLastModifiedDate"),
        )

    def _admin_get(self, username: str) -> UserOut | None:
        try:
            response = self.client.admin_get_user(
                UserPoolId=self.user_pool_id, Username=username
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "UserNotFoundException":
                return None
            raise
        return self._to_out(
            response["Username"],
            response.get("UserAttributes", []),
            UserCreateDate=response.get("UserCreateDate"),
            UserLastModifiedDate=response.get("UserLastModifiedDate"),
        )

    def create(self, signup: SignupIn) -> UserOut:
        email = signup.email.strip().lower()
        attributes = [
            {"Name": "email", "Value": email},
            {"Name": "given_name", "Value": signup.first_name},
            {"Name": "family_name", "Value": signup.last_name},
            {"Name": "birthdate", "Value": signup.date_of_birth.isoformat()},
        ]
        if signup.phone_number:
            attributes.append({"Name": "phone_number", "Value": signup.phone_number})

        params = {
            "ClientId": self.client_id,
            "Username": email,
            "Password": signup.password,
            "UserAttributes": attributes,
        }
        secret_hash = self._secret_hash(email)
        if secret_hash:
            params["SecretHash"] = secret_hash

        try:
            response = self.client.sign_up(**params)
            self.client.admin_confirm_sign_up(
                UserPoolId=self.user_pool_id, Username=email
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code == "UsernameExistsException":
                raise ConflictError("User already exists") from exc
            if code in {"InvalidPasswordException", "InvalidParameterException"}:
                message = exc.response.get("Error", {}).get("Message", "Invalid signup")
                raise ValidationError(message) from exc
            logger.exception("Cognito sign-up failed for %s", email)
            raise StorageError("Could not create the account") from exc
        except BotoCoreError as exc:
            logger.exception("Cognito sign-up failed for %s", email)
            raise StorageError("Could not create the account") from exc

        logger.info("Created Cognito account %s", response["UserSub"])
        return self._to_out(response["UserSub"], attributes)

    def authenticate(self, email: str, password: str) -> UserOut | None:
        email = email.strip().lower()
        auth_parameters = {"USERNAME": email, "PASSWORD": password}
        secret_hash = self._secret_hash(email)
        if secret_hash:
            auth_parameters["SECRET_HASH"] = secret_hash
        try:
            response = self.client.initiate_auth(
                AuthFlow="USER_PASSWORD_AUTH",
                ClientId=self.client_id,
                AuthParameters=auth_parameters,
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NotAuthorizedException", "UserNotFoundException"}:
                return None
            if code == "UserNotConfirmedException":
                raise ValidationError(
                    "Please verify your email before signing in"
                ) from exc
            logger.exception("Cognito sign-in failed for %s", email)
            raise StorageError("Could not sign in") from exc
        except BotoCoreError as exc:
            logger.exception("Cognito sign-in failed for %s", email)
            raise StorageError("Could not sign in") from exc

        if not response.get("AuthenticationResult"):
            return None
        return self.get_by_email(email)

    def get(self, user_id: str) -> UserOut:
        try:
            user = self._admin_get(user_id)
        except (ClientError, BotoCoreError) as exc:
            logger.exception("Cognito lookup failed for %s", user_id)
            raise StorageError("Could not load the user") from exc
        if user is None:
            raise NotFoundError("User not found")
        return user

    def get_by_email(self, email: str) -> UserOut | None:
        try:
            return self._admin_get(email.strip().lower())
        except (ClientError, BotoCoreError) as exc:
            logger.exception("Cognito lookup failed for %s", email)
            raise StorageError("Could not load the user") from exc

    def list_all(self) -> list[UserOut]:
        users: list[UserOut] = []
        try:
            paginator = self.client.get_paginator("list_users")
            for page in paginator.paginate(UserPoolId=self.user_pool_id):
                users.extend(
                    self._to_out(
                        user["Username"],
                        user.get("Attributes", []),
                        UserCreateDate=user.get("UserCreateDate"),
                        UserLastModifiedDate=user.get("UserLastModifiedDate"),
                    )
                    for user in page.get("Users", [])
                )
        except (ClientError, BotoCoreError) as exc:
            logger.exception("Cognito user listing failed")
            raise StorageError("Could not list users") from exc
        return users

    def promote(self, user_id: str) -> UserOut:
        self.get(user_id)
        try:
            self.client.admin_update_user_attributes(
                UserPoolId=self.user_pool_id,
                Username=user_id,
                UserAttributes=[{"Name": SUPER_ADMIN_ATTRIBUTE, "Value": "true"}],
            )
        except (ClientError, BotoCoreError) as exc:
            logger.exception("Cognito promotion failed for %s", user_id)
            raise StorageError("Could not promote the user") from exc
        logger.info("Promoted %s to super admin", user_id)
        return self.get(user_id)

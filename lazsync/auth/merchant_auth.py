"""マーチャント認証

登録・ログイン・ログアウト・プロフィール更新・パスワード変更。
パスワードはwerkzeugでハッシュ化、APIトークンはsha256ハッシュのみ保存する。
"""

import hashlib
import logging
import re
import secrets
from typing import Any, Dict, List, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from lazsync.db.database import Database
from lazsync.errors import AuthError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_PASSWORD_LENGTH = 8

# プロフィール更新で変更可能なフィールド
PROFILE_FIELDS = ("name", "email", "phone", "address")


def hash_token(token: str) -> str:
    """APIトークンの保存用ハッシュ"""
    return hashlib.sha256(token.encode()).hexdigest()


def public_merchant(merchant: Dict[str, Any]) -> Dict[str, Any]:
    """レスポンス用にパスワードハッシュを除外"""
    return {k: v for k, v in merchant.items() if k != "password_hash"}


def _add(errors: Dict[str, List[str]], field: str, message: str) -> None:
    errors.setdefault(field, []).append(message)


def _validate_profile(data: Dict[str, Any], errors: Dict[str, List[str]],
                      partial: bool) -> None:
    """name/email/phone/addressの検証"""
    if "name" in data or not partial:
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            _add(errors, "name", "nameは必須です")
        elif len(name) > 255:
            _add(errors, "name", "nameは255文字以内です")

    if "email" in data or not partial:
        email = data.get("email")
        if not isinstance(email, str) or not email.strip():
            _add(errors, "email", "emailは必須です")
        elif len(email) > 255 or not _EMAIL_RE.match(email):
            _add(errors, "email", "emailの形式が正しくありません")

    phone = data.get("phone")
    if phone is not None and (not isinstance(phone, str) or len(phone) > 20):
        _add(errors, "phone", "phoneは20文字以内の文字列です")

    address = data.get("address")
    if address is not None and (not isinstance(address, str) or len(address) > 500):
        _add(errors, "address", "addressは500文字以内の文字列です")


def _validate_new_password(password: Any, confirmation: Any, field: str,
                           errors: Dict[str, List[str]]) -> None:
    if not isinstance(password, str) or not password:
        _add(errors, field, "{}は必須です".format(field))
        return
    if len(password) < MIN_PASSWORD_LENGTH:
        _add(errors, field, "{}は{}文字以上です".format(field, MIN_PASSWORD_LENGTH))
    if password != confirmation:
        _add(errors, field, "{}が確認用と一致しません".format(field))


class MerchantAuth:
    """マーチャントのアカウント・トークン管理"""

    def __init__(self, database: Database):
        self.db = database

    def _issue_token(self, merchant_id: int, name: str = "auth_token") -> str:
        token = secrets.token_urlsafe(40)
        self.db.create_token(merchant_id, hash_token(token), name)
        return token

    def register(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """マーチャント登録

        Returns:
            {"merchant": dict, "access_token": str, "token_type": "Bearer"}
        """
        errors = {}  # type: Dict[str, List[str]]
        _validate_profile(data, errors, partial=False)
        _validate_new_password(
            data.get("password"), data.get("password_confirmation"),
            "password", errors,
        )
        if not errors.get("email") and self.db.get_merchant_by_email(data["email"]):
            _add(errors, "email", "このメールアドレスは既に登録されています")
        if errors:
            raise ValidationError(errors)

        merchant_id = self.db.create_merchant({
            "name": data["name"].strip(),
            "email": data["email"].strip(),
            "password_hash": generate_password_hash(data["password"]),
            "phone": data.get("phone"),
            "address": data.get("address"),
            "status": "active",
        })
        logger.info(f"マーチャント登録: id={merchant_id}")

        return {
            "merchant": public_merchant(self.db.get_merchant(merchant_id)),
            "access_token": self._issue_token(merchant_id),
            "token_type": "Bearer",
        }

    def login(self, email: Any, password: Any) -> Dict[str, Any]:
        """ログイン。無効アカウントはパスワードの正否に関わらず403"""
        errors = {}  # type: Dict[str, List[str]]
        if not isinstance(email, str) or not _EMAIL_RE.match(email or ""):
            _add(errors, "email", "emailの形式が正しくありません")
        if not isinstance(password, str) or not password:
            _add(errors, "password", "passwordは必須です")
        if errors:
            raise ValidationError(errors)

        merchant = self.db.get_merchant_by_email(email)
        if merchant and merchant["status"] != "active":
            raise AuthError("アカウントが無効です", status_code=403)
        if not merchant or not check_password_hash(merchant["password_hash"], password):
            raise AuthError("メールアドレスまたはパスワードが正しくありません")

        return {
            "merchant": public_merchant(merchant),
            "access_token": self._issue_token(merchant["id"]),
            "token_type": "Bearer",
        }

    def authenticate(self, token: Optional[str]) -> Dict[str, Any]:
        """APIトークンからマーチャントを特定"""
        if not token:
            raise AuthError("認証が必要です")

        token_row = self.db.get_token(hash_token(token))
        if not token_row:
            raise AuthError("トークンが無効です")

        merchant = self.db.get_merchant(token_row["merchant_id"])
        if not merchant:
            raise AuthError("トークンが無効です")
        if merchant["status"] != "active":
            raise AuthError("アカウントが無効です", status_code=403)
        return public_merchant(merchant)

    def logout(self, token: str) -> bool:
        """現在のトークンを失効"""
        return self.db.delete_token(hash_token(token))

    def logout_all(self, merchant_id: int) -> int:
        """全デバイスのトークンを失効"""
        return self.db.delete_tokens(merchant_id)

    def update_profile(self, merchant_id: int,
                       data: Dict[str, Any]) -> Dict[str, Any]:
        """プロフィール更新（name/email/phone/addressのみ）"""
        patch = {k: data[k] for k in PROFILE_FIELDS if k in data}
        errors = {}  # type: Dict[str, List[str]]
        _validate_profile(patch, errors, partial=True)
        if "email" in patch and not errors.get("email"):
            existing = self.db.get_merchant_by_email(patch["email"])
            if existing and existing["id"] != merchant_id:
                _add(errors, "email", "このメールアドレスは既に登録されています")
        if errors:
            raise ValidationError(errors)

        if patch:
            self.db.update_merchant(merchant_id, patch)
        merchant = self.db.get_merchant(merchant_id)
        if not merchant:
            raise NotFoundError("マーチャントが見つかりません")
        return public_merchant(merchant)

    def change_password(self, merchant_id: int, data: Dict[str, Any],
                        current_token: Optional[str] = None) -> None:
        """パスワード変更（現在のトークン以外を失効）"""
        errors = {}  # type: Dict[str, List[str]]
        if not data.get("current_password"):
            _add(errors, "current_password", "current_passwordは必須です")
        _validate_new_password(
            data.get("new_password"), data.get("new_password_confirmation"),
            "new_password", errors,
        )
        if errors:
            raise ValidationError(errors)

        merchant = self.db.get_merchant(merchant_id)
        if not merchant:
            raise NotFoundError("マーチャントが見つかりません")
        if not check_password_hash(merchant["password_hash"], data["current_password"]):
            raise ValidationError(
                {"current_password": ["現在のパスワードが正しくありません"]},
                message="現在のパスワードが正しくありません",
            )

        self.db.update_merchant(
            merchant_id,
            {"password_hash": generate_password_hash(data["new_password"])},
        )
        self.db.delete_tokens(
            merchant_id,
            except_hash=hash_token(current_token) if current_token else None,
        )

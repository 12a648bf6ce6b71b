import re
from typing import Any, Optional

from .cipher import CredentialCipher, secure_placeholder
from .database import Product
from .identity import RequestContext, RoleGate
from ..utils.constants import (
    GameServer,
    MAX_PRODUCT_IMAGES,
    ProductStatus,
    ProductType,
    SUPPORT_MESSAGE,
)
from ..utils.errors import ConflictError, DecryptionError, DuplicateProductCode, NotFoundError, ValidationError
from ..utils.logger import logger

CREDENTIAL_KEYS = ("gameAccount", "game_account")

_RECORD_TO_FIELD = {
    "productCode": "product_code",
    "name": "name",
    "price": "price",
    "description": "description",
    "images": "images",
    "thumbnailImage": "thumbnail_image",
    "specifications": "specifications",
    "type": "type",
    "status": "status",
    "server": "server",
    "gameAccount": "game_account",
    "createdBy": "created_by",
}


def to_public_view(record: Any) -> dict[str, Any]:
    """Strip owner-only fields. Total and idempotent; never raises."""
    if not isinstance(record, dict):
        return {}
    public = dict(record)
    for key in CREDENTIAL_KEYS:
        public.pop(key, None)
    return public


def amount_of(price: Any) -> int:
    digits = re.sub(r"[^\d]", "", str(price or ""))
    if not digits:
        raise ValidationError("product price is not a number")
    return int(digits)


class CatalogStore:
    """Product persistence; returns records that still carry credentials."""

    async def read_all(self) -> list[dict[str, Any]]:
        return [product.to_record() for product in await Product.all().order_by("-created_at")]

    async def find(self, product_code: str) -> Optional[dict[str, Any]]:
        product = await Product.get_or_none(product_code=product_code)
        return product.to_record() if product else None

    async def exists(self, product_code: str, exclude_id: Optional[str] = None) -> bool:
        query = Product.filter(product_code=product_code)
        if exclude_id:
            query = query.exclude(id=exclude_id)
        return await query.exists()

    async def write(self, record: dict[str, Any]) -> dict[str, Any]:
        values = {field: record[key] for key, field in _RECORD_TO_FIELD.items() if key in record}
        product_id = str(record.get("id") or "").strip()
        product = await Product.get_or_none(id=product_id) if product_id else None
        if product is None:
            product = await Product.create(**({"id": product_id} if product_id else {}), **values)
        else:
            product.update_from_dict(values)
            await product.save()
        return product.to_record()

    async def delete(self, product_code: str) -> bool:
        deleted = await Product.filter(product_code=product_code).delete()
        return bool(deleted)

    async def claim_stock(self, product_code: str) -> bool:
        """Flip ``in_stock`` to ``out_of_stock`` in one conditional update; False if someone got there first."""
        claimed = await Product.filter(product_code=product_code, status=ProductStatus.IN_STOCK).update(
            status=ProductStatus.OUT_OF_STOCK
        )
        return bool(claimed)


class CatalogService:
    def __init__(self, store: CatalogStore, cipher: CredentialCipher, gate: RoleGate):
        self.store = store
        self.cipher = cipher
        self.gate = gate

    async def list_public(self, product_type: Optional[str] = None) -> list[dict[str, Any]]:
        records = await self.store.read_all()
        if product_type:
            records = [record for record in records if record.get("type") == product_type]
        return [to_public_view(record) for record in records]

    async def get_public(self, product_code: str) -> dict[str, Any]:
        return to_public_view(await self._require(product_code))

    async def get_with_credentials(self, product_code: str) -> dict[str, Any]:
        return await self._require(product_code)

    async def list_with_credentials(self, ctx: RequestContext) -> list[dict[str, Any]]:
        await self.gate.authorize_owner(ctx)
        return await self.store.read_all()

    async def create_product(self, payload: Any, ctx: RequestContext) -> dict[str, Any]:
        await self.gate.authorize_owner(ctx)
        record = self._normalize_product(payload)
        if await self.store.exists(record["productCode"]):
            raise DuplicateProductCode(record["productCode"])

        record["createdBy"] = ctx.principal_id or ""
        game_account = self._game_account_from(payload)
        if game_account is not None:
            record["gameAccount"] = game_account

        saved = await self.store.write(record)
        logger.info(f"Product {saved['productCode']} created by {ctx.principal_id}")
        return saved

    async def update_product(self, product_code: str, payload: Any, ctx: RequestContext) -> dict[str, Any]:
        await self.gate.authorize_owner(ctx)
        existing = await self._require(product_code)
        if not isinstance(payload, dict):
            raise ValidationError("product payload is required")

        merged = {**to_public_view(existing), **to_public_view(payload)}
        record = self._normalize_product(merged)
        if record["productCode"] != existing["productCode"] and await self.store.exists(
            record["productCode"], exclude_id=existing["id"]
        ):
            raise DuplicateProductCode(record["productCode"])

        record["id"] = existing["id"]
        game_account = self._game_account_from(payload)
        if game_account is not None:
            record["gameAccount"] = game_account

        saved = await self.store.write(record)
        logger.info(f"Product {product_code} updated by {ctx.principal_id}")
        return saved

    async def delete_product(self, product_code: str, ctx: RequestContext) -> dict[str, Any]:
        await self.gate.authorize_owner(ctx)
        existing = await self._require(product_code)
        await self.store.delete(product_code)
        logger.info(f"Product {product_code} deleted by {ctx.principal_id}")
        return to_public_view(existing)

    async def reveal_credentials(self, product_code: str, ctx: RequestContext) -> dict[str, Any]:
        await self.gate.authorize_owner(ctx)
        record = await self._require(product_code)
        game_account = record.get("gameAccount")
        if not game_account:
            return {"productCode": product_code, "username": "", "password": "", "decrypted": True}
        try:
            credentials = self.cipher.decrypt_account(game_account)
        except DecryptionError:
            logger.error(f"Stored credentials for {product_code} could not be decrypted")
            return {
                "productCode": product_code,
                "username": secure_placeholder(),
                "password": secure_placeholder(),
                "decrypted": False,
                "message": SUPPORT_MESSAGE,
            }
        return {"productCode": product_code, **credentials, "decrypted": True}

    async def credentials_for_delivery(self, product_code: str) -> tuple[dict[str, Any], dict[str, str]]:
        record = await self._require(product_code)
        if not await self.mark_sold(product_code):
            raise ConflictError(f"product {product_code} is already sold")
        game_account = record.get("gameAccount")
        if not game_account:
            raise DecryptionError()
        return to_public_view(record), self.cipher.decrypt_account(game_account)

    async def mark_sold(self, product_code: str) -> bool:
        """Claim an available product for one buyer. Preorders are never claimed."""
        record = await self.store.find(product_code)
        if record is None:
            return False
        if record.get("type") != ProductType.AVAILABLE:
            return True
        return await self.store.claim_stock(product_code)

    async def _require(self, product_code: str) -> dict[str, Any]:
        code = str(product_code or "").strip()
        if not code:
            raise ValidationError("product code is required")
        record = await self.store.find(code)
        if record is None:
            raise NotFoundError("product not found")
        return record

    def _game_account_from(self, payload: Any) -> Optional[dict[str, str]]:
        if not isinstance(payload, dict):
            return None
        account = payload.get("gameAccount")
        if account is None:
            return None
        if not isinstance(account, dict):
            raise ValidationError("gameAccount must be an object")

        if account.get("encryptionKeyId"):
            # Already ciphertext (an unchanged record sent back); it must open under the active key.
            try:
                self.cipher.decrypt_account(account)
            except DecryptionError:
                raise ValidationError("gameAccount ciphertext is not valid for the active key") from None
            return {
                "username": str(account.get("username") or ""),
                "password": str(account.get("password") or ""),
                "encryptionKeyId": str(account["encryptionKeyId"]),
            }

        username = str(account.get("username") or "").strip()
        password = str(account.get("password") or "")
        if not username and not password.strip():
            return None
        return self.cipher.encrypt_account(username, password)

    def _normalize_product(self, product: Any) -> dict[str, Any]:
        if not isinstance(product, dict):
            raise ValidationError("product payload is required")

        name = str(product.get("name") or "").strip()
        product_code = str(product.get("productCode") or "").strip()
        price = str(product.get("price") or "").strip()
        if not name:
            raise ValidationError("product name is required")
        if not product_code:
            raise ValidationError("product code is required")
        amount_of(price)

        images = product.get("images") or []
        if not isinstance(images, list):
            raise ValidationError("images must be a list")
        images = [str(image).strip() for image in images if str(image).strip()]
        if len(images) > MAX_PRODUCT_IMAGES:
            raise ValidationError(f"a product can have at most {MAX_PRODUCT_IMAGES} images")

        thumbnail = str(product.get("thumbnailImage") or "").strip()
        if not thumbnail:
            raise ValidationError("a thumbnail image is required before publishing")

        specifications = product.get("specifications") or []
        if not isinstance(specifications, list):
            raise ValidationError("specifications must be a list")
        normalized_specs: list[dict[str, str]] = []
        for spec in specifications:
            if not isinstance(spec, dict):
                continue
            label = str(spec.get("label") or "").strip()
            if label:
                normalized_specs.append({"label": label, "value": str(spec.get("value") or "").strip()})

        type_value = str(product.get("type") or ProductType.AVAILABLE).strip()
        if type_value not in ProductType.ALL:
            raise ValidationError(f"type must be one of {', '.join(ProductType.ALL)}")
        status = str(product.get("status") or ProductStatus.IN_STOCK).strip()
        if status not in ProductStatus.ALL:
            raise ValidationError(f"status must be one of {', '.join(ProductStatus.ALL)}")
        server = str(product.get("server") or GameServer.DEFAULT).strip()
        if server not in GameServer.ALL:
            raise ValidationError(f"server must be one of {', '.join(GameServer.ALL)}")

        return {
            "productCode": product_code,
            "name": name,
            "price": price,
            "description": str(product.get("description") or "").strip(),
            "images": images,
            "thumbnailImage": thumbnail,
            "specifications": normalized_specs,
            "type": type_value,
            "status": status,
            "server": server,
        }

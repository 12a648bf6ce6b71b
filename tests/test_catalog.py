import pytest

from gameshop.services.catalog import amount_of, to_public_view
from gameshop.services.database import Product, UserProfile
from gameshop.services.identity import RequestContext
from gameshop.utils.constants import ACTIVE_KEY_ID, ProductStatus, Role, SUPPORT_MESSAGE
from gameshop.utils.errors import AuthError, ConflictError, DuplicateProductCode, Forbidden, NotFoundError, ValidationError

from .conftest import OWNER_UID, product_payload


def test_public_view_strips_credentials():
    record = {"productCode": "A", "gameAccount": {"username": "x"}, "game_account": {"password": "y"}}

    public = to_public_view(record)

    assert public == {"productCode": "A"}
    assert "gameAccount" in record
    assert to_public_view(public) == public


@pytest.mark.parametrize("value", [None, "text", 42, ["gameAccount"]])
def test_public_view_is_total(value):
    assert to_public_view(value) == {}


def test_amount_of():
    assert amount_of("500000") == 500000
    assert amount_of("500.000 ₫") == 500000
    with pytest.raises(ValidationError):
        amount_of("free")


async def test_create_encrypts_credentials(owner_ctx, catalog):
    saved = await catalog.create_product(product_payload(), owner_ctx)

    account = saved["gameAccount"]
    assert account["encryptionKeyId"] == ACTIVE_KEY_ID
    assert account["username"] != "player1"
    assert "hunter22" not in account["password"]
    assert saved["createdBy"] == OWNER_UID

    public = await catalog.get_public("PJSK-001")
    assert "gameAccount" not in public
    assert public["specifications"] == [{"label": "Rank", "value": "50"}]


async def test_duplicate_code_rejected_before_write(owner_ctx, catalog, monkeypatch):
    await catalog.create_product(product_payload(), owner_ctx)

    writes = []
    original_write = catalog.store.write

    async def tracking_write(record):
        writes.append(record)
        return await original_write(record)

    monkeypatch.setattr(catalog.store, "write", tracking_write)

    with pytest.raises(DuplicateProductCode) as exc_info:
        await catalog.create_product(product_payload(name="Another"), owner_ctx)
    assert exc_info.value.status == 409
    assert writes == []
    assert await Product.filter(product_code="PJSK-001").count() == 1


async def test_owner_gate_on_writes(owner, catalog):
    await UserProfile.create(uid="user-uid", email="user@example.com", role=Role.USER)

    with pytest.raises(Forbidden):
        await catalog.create_product(product_payload(), RequestContext(principal_id="user-uid"))
    with pytest.raises(AuthError):
        await catalog.create_product(product_payload(), RequestContext())
    assert await Product.all().count() == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": ""},
        {"productCode": " "},
        {"price": "n/a"},
        {"thumbnailImage": ""},
        {"images": [f"https://img.example.com/{i}.png" for i in range(5)]},
        {"server": "EU"},
        {"type": "rental"},
        {"status": "sold"},
        {"gameAccount": "player1:hunter22"},
    ],
)
async def test_invalid_products(owner_ctx, catalog, overrides):
    with pytest.raises(ValidationError):
        await catalog.create_product(product_payload(**overrides), owner_ctx)


async def test_update_keeps_credentials_unless_replaced(owner_ctx, catalog, cipher):
    created = await catalog.create_product(product_payload(), owner_ctx)

    updated = await catalog.update_product("PJSK-001", {"price": "450000"}, owner_ctx)
    assert updated["price"] == "450000"
    assert updated["gameAccount"] == created["gameAccount"]

    replaced = await catalog.update_product(
        "PJSK-001", {"gameAccount": {"username": "player2", "password": "pw"}}, owner_ctx
    )
    assert cipher.decrypt_account(replaced["gameAccount"]) == {"username": "player2", "password": "pw"}


async def test_update_to_taken_code(owner_ctx, catalog):
    await catalog.create_product(product_payload(), owner_ctx)
    await catalog.create_product(product_payload("PJSK-002"), owner_ctx)

    with pytest.raises(DuplicateProductCode):
        await catalog.update_product("PJSK-002", {"productCode": "PJSK-001"}, owner_ctx)


async def test_delete(owner_ctx, catalog):
    await catalog.create_product(product_payload(), owner_ctx)

    removed = await catalog.delete_product("PJSK-001", owner_ctx)
    assert "gameAccount" not in removed
    with pytest.raises(NotFoundError):
        await catalog.get_public("PJSK-001")


async def test_reveal_credentials(owner_ctx, catalog):
    await catalog.create_product(product_payload(), owner_ctx)

    revealed = await catalog.reveal_credentials("PJSK-001", owner_ctx)

    assert revealed["decrypted"] is True
    assert revealed["username"] == "player1"
    assert revealed["password"] == "hunter22"


async def test_reveal_with_unknown_key_shows_placeholders(owner_ctx, catalog):
    saved = await catalog.create_product(product_payload(), owner_ctx)
    stale = dict(saved["gameAccount"], encryptionKeyId="v0")
    await catalog.store.write({"id": saved["id"], "gameAccount": stale})

    revealed = await catalog.reveal_credentials("PJSK-001", owner_ctx)

    assert revealed["decrypted"] is False
    assert revealed["message"] == SUPPORT_MESSAGE
    assert "player1" not in revealed["username"]


async def test_listing_by_type(owner_ctx, catalog):
    await catalog.create_product(product_payload(), owner_ctx)
    await catalog.create_product(product_payload("PRE-001", type="preorder"), owner_ctx)

    assert [p["productCode"] for p in await catalog.list_public("preorder")] == ["PRE-001"]
    assert len(await catalog.list_public()) == 2
    assert all("gameAccount" in p for p in await catalog.list_with_credentials(owner_ctx))


async def test_mark_sold_only_touches_available(owner_ctx, catalog):
    await catalog.create_product(product_payload(), owner_ctx)
    await catalog.create_product(product_payload("PRE-001", type="preorder"), owner_ctx)

    await catalog.mark_sold("PJSK-001")
    await catalog.mark_sold("PRE-001")

    assert (await catalog.get_public("PJSK-001"))["status"] == ProductStatus.OUT_OF_STOCK
    assert (await catalog.get_public("PRE-001"))["status"] == ProductStatus.IN_STOCK


async def test_available_product_is_sold_once(owner_ctx, catalog):
    await catalog.create_product(product_payload(), owner_ctx)

    assert await catalog.mark_sold("PJSK-001") is True
    assert await catalog.mark_sold("PJSK-001") is False
    assert await catalog.mark_sold("MISSING") is False


async def test_delivery_refuses_sold_product(owner_ctx, catalog):
    await catalog.create_product(product_payload(), owner_ctx)

    public, credentials = await catalog.credentials_for_delivery("PJSK-001")
    assert "gameAccount" not in public
    assert credentials == {"username": "player1", "password": "hunter22"}

    with pytest.raises(ConflictError):
        await catalog.credentials_for_delivery("PJSK-001")

import re

import pytest

from shutupnrave.errors import (
    AffiliateNotFound, RefCodeUnavailable, ValidationError,
)
from shutupnrave.helpers import generate_ref_code
from shutupnrave.model import affiliates
from shutupnrave.model.customers import get_or_create_ticket_type
from shutupnrave.model.db import (
    OrderItem, COMMISSION_FIXED_AMOUNT, COMMISSION_PERCENTAGE,
)


async def _affiliate(db, email="promo@example.com", full_name="Promo King"):
    async with db.begin():
        affiliate, _ = await affiliates.create_affiliate(
            db, email=email, full_name=full_name,
        )
    return affiliate


class TestRefCode:
    def test_name_prefix(self):
        assert re.match(r"^ADALOV[A-Z0-9]{6}$", generate_ref_code("Ada Lovelace"))

    def test_short_and_missing_names(self):
        assert re.match(r"^BO[A-Z0-9]{6}$", generate_ref_code("Bo"))
        assert re.match(r"^AFF[A-Z0-9]{6}$", generate_ref_code("123 !!"))
        assert re.match(r"^AFF[A-Z0-9]{6}$", generate_ref_code(None))


class TestCreateAffiliate:
    async def test_create_then_reuse(self, db):
        async with db.begin():
            first, created = await affiliates.create_affiliate(
                db, email="promo@example.com", full_name="Promo King",
            )
        assert created
        assert first.ref_code.startswith("PROMOK")
        assert first.status == "ACTIVE"

        async with db.begin():
            again, created = await affiliates.create_affiliate(
                db, email="promo@example.com",
            )
        assert not created
        assert again.id == first.id

    async def test_lookup_by_ref_is_case_insensitive(self, db):
        affiliate = await _affiliate(db)
        async with db.begin():
            found = await affiliates.find_affiliate_by_ref(
                db, f"  {affiliate.ref_code.lower()} "
            )
            missing = await affiliates.find_affiliate_by_ref(db, "")
        assert found.id == affiliate.id
        assert missing is None

    async def test_get_missing(self, db):
        with pytest.raises(AffiliateNotFound):
            async with db.begin():
                await affiliates.get_affiliate(db, "nope")

    async def test_ref_code_space_exhausted(self, db, monkeypatch):
        monkeypatch.setattr(affiliates, "generate_ref_code",
                            lambda full_name: "PROMOKAAAAAA")
        await _affiliate(db)
        with pytest.raises(RefCodeUnavailable):
            async with db.begin():
                await affiliates.create_affiliate(
                    db, email="other@example.com", full_name="Promo Queen",
                )


class TestPortalPassword:
    async def test_hash_and_authenticate(self, db):
        async with db.begin():
            affiliate, _ = await affiliates.create_affiliate(
                db, email="promo@example.com", full_name="Promo King",
                password="s3cret!",
            )
        assert affiliate.password_hash
        assert affiliate.password_hash != "s3cret!"

        async with db.begin():
            ok = await affiliates.authenticate_affiliate(
                db, " PROMO@example.com", "s3cret!"
            )
            wrong = await affiliates.authenticate_affiliate(
                db, "promo@example.com", "guess1"
            )
            stranger = await affiliates.authenticate_affiliate(
                db, "nobody@example.com", "s3cret!"
            )
        assert ok.id == affiliate.id
        assert wrong is None
        assert stranger is None

    async def test_no_password_means_no_login(self, db):
        await _affiliate(db)
        async with db.begin():
            assert await affiliates.authenticate_affiliate(
                db, "promo@example.com", ""
            ) is None

    async def test_password_replaced_on_existing_affiliate(self, db):
        await _affiliate(db)
        async with db.begin():
            _, created = await affiliates.create_affiliate(
                db, email="promo@example.com", password="newpass",
            )
            found = await affiliates.authenticate_affiliate(
                db, "promo@example.com", "newpass"
            )
        assert not created
        assert found is not None

    async def test_short_password_rejected(self, db):
        with pytest.raises(ValidationError):
            async with db.begin():
                await affiliates.create_affiliate(
                    db, email="promo@example.com", password="12345",
                )


class TestCommissionRules:
    async def test_rule_upsert_and_validation(self, db):
        affiliate = await _affiliate(db)
        async with db.begin():
            tt = await get_or_create_ticket_type(db, "Solo Vibes", 5000, "x")
            a = await affiliates.get_affiliate(db, affiliate.id)
            await affiliates.set_commission_rule(
                db, a, tt, commission_type=COMMISSION_PERCENTAGE, rate=0.2,
            )
            await affiliates.set_commission_rule(
                db, a, tt, commission_type=COMMISSION_FIXED_AMOUNT, amount=250,
            )
        async with db.begin():
            a = await affiliates.get_affiliate(db, affiliate.id)
        assert len(a.rules) == 1
        assert a.rules[0].commission_type == COMMISSION_FIXED_AMOUNT
        assert a.rules[0].rate is None

        for kwargs in (
            dict(commission_type=COMMISSION_PERCENTAGE, rate=0),
            dict(commission_type=COMMISSION_PERCENTAGE, rate=1.2),
            dict(commission_type=COMMISSION_FIXED_AMOUNT, amount=-1),
            dict(commission_type="BONUS", rate=0.1),
        ):
            with pytest.raises(ValidationError):
                async with db.begin():
                    await affiliates.set_commission_rule(db, a, tt, **kwargs)

    async def test_commission_for(self, db):
        affiliate = await _affiliate(db)
        async with db.begin():
            tt = await get_or_create_ticket_type(db, "Solo Vibes", 5000, "x")
            a = await affiliates.get_affiliate(db, affiliate.id)
        item = OrderItem(ticket_type_id=tt.id, quantity=3, unit_price=5000,
                         total_price=15000)

        # no rule: default 10% of the line
        assert affiliates.commission_for(a, item) == 1500

        async with db.begin():
            await affiliates.set_commission_rule(
                db, a, tt, commission_type=COMMISSION_PERCENTAGE, rate=0.25,
            )
            a = await affiliates.get_affiliate(db, affiliate.id)
        assert affiliates.commission_for(a, item) == 3750

        async with db.begin():
            await affiliates.set_commission_rule(
                db, a, tt, commission_type=COMMISSION_FIXED_AMOUNT, amount=400,
            )
            a = await affiliates.get_affiliate(db, affiliate.id)
        assert affiliates.commission_for(a, item) == 1200


class TestStats:
    async def test_counts_only_settled_orders(self, db, orchestrator,
                                              place_order):
        affiliate = await _affiliate(db)
        settled = await place_order(quantity=2,
                                    affiliate_ref=affiliate.ref_code)
        await place_order(quantity=5, affiliate_ref=affiliate.ref_code)
        await orchestrator.complete_checkout(settled)

        async with db.begin():
            stats = await affiliates.affiliate_stats(db, affiliate.id)
        assert stats["orders"] == 1
        assert stats["tickets"] == 2
        assert stats["revenue"] == 10500
        assert stats["total_commission"] == 1000
        assert stats["by_ticket_type"]["Solo Vibes"] == {
            "tickets": 2, "revenue": 10000, "commission": 1000,
        }

    async def test_list(self, db):
        await _affiliate(db)
        await _affiliate(db, email="second@example.com", full_name="Second")
        async with db.begin():
            total, rows = await affiliates.list_affiliates(db, limit=1)
        assert total == 2
        assert len(rows) == 1

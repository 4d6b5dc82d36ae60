import re

import pytest

from shutupnrave.errors import (
    DiscountNotFound, DuplicateDiscountCode, InvalidDiscountCode,
    ValidationError,
)
from shutupnrave.model import discounts
from shutupnrave.model.db import Discount


class TestValidateDiscount:
    async def test_active_code_any_case(self, db):
        async with db.begin():
            await discounts.create_discount(db, percentage=0.2, code="rave20")
        async with db.begin():
            d = await discounts.validate_discount(db, "  Rave20 ")
        assert d.code == "RAVE20"
        assert 0 < d.percentage <= 1

    async def test_unknown_code(self, db):
        with pytest.raises(InvalidDiscountCode):
            async with db.begin():
                await discounts.validate_discount(db, "MISSING")

    async def test_empty_code(self, db):
        with pytest.raises(InvalidDiscountCode):
            async with db.begin():
                await discounts.validate_discount(db, "")

    async def test_inactive_code(self, db):
        async with db.begin():
            await discounts.create_discount(db, percentage=0.2, code="OFF20",
                                            is_active=False)
        with pytest.raises(InvalidDiscountCode):
            async with db.begin():
                await discounts.validate_discount(db, "OFF20")

    @pytest.mark.parametrize("rate", [0, -0.5, 1.5])
    async def test_out_of_range_rows_are_rejected(self, db, rate):
        # written around the admin checks
        db.add(Discount(code="BROKEN", percentage=rate, is_active=True))
        await db.commit()
        with pytest.raises(InvalidDiscountCode):
            async with db.begin():
                await discounts.validate_discount(db, "BROKEN")


class TestCheckPercentage:
    @pytest.mark.parametrize("value", [0, -0.1, 1.01, True, "0.5", None])
    def test_rejects(self, value):
        with pytest.raises(ValidationError):
            discounts.check_percentage(value)

    @pytest.mark.parametrize("value", [0.01, 0.5, 1])
    def test_accepts(self, value):
        assert discounts.check_percentage(value) == float(value)


class TestAdminCrud:
    async def test_generated_code(self, db):
        async with db.begin():
            d = await discounts.create_discount(db, percentage=0.1)
        assert re.match(r"^[A-Z0-9]{8}$", d.code)
        assert d.is_active is True
        assert d.usage_count == 0

    @pytest.mark.parametrize("code", ["AB", "X" * 33])
    async def test_code_length(self, db, code):
        with pytest.raises(ValidationError):
            async with db.begin():
                await discounts.create_discount(db, percentage=0.1, code=code)

    async def test_duplicate_code(self, db):
        async with db.begin():
            await discounts.create_discount(db, percentage=0.1, code="EARLY")
        with pytest.raises(DuplicateDiscountCode):
            async with db.begin():
                await discounts.create_discount(db, percentage=0.3,
                                                code="early")

    async def test_update_rejects_code_of_another_discount(self, db):
        async with db.begin():
            await discounts.create_discount(db, percentage=0.1, code="EARLY")
            late = await discounts.create_discount(db, percentage=0.1,
                                                   code="LATE")
        with pytest.raises(DuplicateDiscountCode):
            async with db.begin():
                await discounts.update_discount(db, late.id, code="EARLY",
                                                percentage=0.2, is_active=True)

    async def test_update_and_toggle(self, db):
        async with db.begin():
            d = await discounts.create_discount(db, percentage=0.1,
                                                code="EARLY")
        async with db.begin():
            d = await discounts.update_discount(db, d.id, code="earlier",
                                                percentage=0.25,
                                                is_active=True)
        assert (d.code, d.percentage) == ("EARLIER", 0.25)
        async with db.begin():
            d = await discounts.set_discount_active(db, d.id, False)
        assert d.is_active is False

    async def test_list(self, db):
        async with db.begin():
            await discounts.create_discount(db, percentage=0.1, code="FIRST")
            await discounts.create_discount(db, percentage=0.1, code="SECOND")
        async with db.begin():
            codes = {d.code for d in await discounts.list_discounts(db)}
        assert codes == {"FIRST", "SECOND"}

    async def test_delete(self, db):
        async with db.begin():
            d = await discounts.create_discount(db, percentage=0.1,
                                                code="GONE")
        async with db.begin():
            await discounts.delete_discount(db, d.id)
        with pytest.raises(DiscountNotFound):
            async with db.begin():
                await discounts.delete_discount(db, d.id)

    async def test_redeem_counts_atomically(self, db):
        async with db.begin():
            d = await discounts.create_discount(db, percentage=0.1,
                                                code="COUNT")
        for _ in range(3):
            async with db.begin():
                assert await discounts.redeem(db, d.id)
        async with db.begin():
            d = await discounts.get_discount(db, d.id)
        assert d.usage_count == 3

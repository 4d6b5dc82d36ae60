import io
from dataclasses import replace

import pytest
from PIL import Image
from sqlalchemy import select

from shutupnrave import emails
from shutupnrave.assets import AssetStore, render_qr_png, to_data_url
from shutupnrave.errors import AlreadyDeactivated, NotPaid
from shutupnrave.fulfillment import FulfillmentPipeline
from shutupnrave.model import affiliates, ledger
from shutupnrave.model.db import AffiliateCommission, COMMISSION_FIXED_AMOUNT
from shutupnrave.tickets import deactivate_ticket


class TestVerificationImage:
    def test_png_at_least_200px(self):
        png = render_qr_png("https://tickets.test/admin-page/ORD-2025-ABC123")
        img = Image.open(io.BytesIO(png))
        assert img.format == "PNG"
        assert img.size[0] == img.size[1]
        assert img.size[0] >= 200

    def test_data_url(self):
        assert to_data_url(b"\x89PNG").startswith("data:image/png;base64,")


class TestPipeline:
    async def test_all_steps(self, db, pipeline, paid_order, assets, mailer,
                             settings):
        order = await paid_order(quantity=2)
        report = await pipeline.run(db, order)

        assert report.ok
        assert report.qr_hosted
        assert report.emails_sent == ["customer_email", "admin_email"]
        assert order.order_id in assets.uploads

        async with db.begin():
            order = await ledger.require_order(db, order.order_id)
        assert order.qr_code_url == report.qr_code_url

        confirmation = mailer.to("ada@example.com")[0]
        assert order.order_id in confirmation.html
        assert report.qr_code_url in confirmation.html
        assert settings.event_location in confirmation.html
        admin = mailer.to("ops@shutupnrave.test")[0]
        assert order.order_id in admin.subject

    async def test_host_failure_inlines_image(self, db, pipeline, paid_order,
                                              assets, mailer):
        assets.fail_upload = True
        order = await paid_order()
        report = await pipeline.run(db, order)

        assert report.failed_steps == ["qr_upload"]
        assert report.qr_code_url.startswith("data:image/png;base64,")
        assert not report.qr_hosted
        assert "data:image/png;base64," in mailer.to("ada@example.com")[0].html
        async with db.begin():
            order = await ledger.require_order(db, order.order_id)
        assert order.qr_code_url == report.qr_code_url

    async def test_unexpected_host_error_inlines_image(self, db, settings,
                                                       paid_order, mailer):
        class BrokenHost(AssetStore):
            async def upload(self, png, public_id):
                raise RuntimeError("bad response shape")

            async def delete(self, url):
                raise RuntimeError("bad response shape")

        broken = FulfillmentPipeline(settings=settings, mailer=mailer,
                                     assets=BrokenHost())
        order = await paid_order()
        report = await broken.run(db, order)

        assert report.failed_steps == ["qr_upload"]
        assert report.qr_code_url.startswith("data:image/png;base64,")
        assert report.emails_sent == ["customer_email", "admin_email"]

    async def test_render_failure_only_skips_its_email(
        self, db, pipeline, paid_order, mailer, monkeypatch
    ):
        def broken_render(props):
            raise KeyError("template variable")

        monkeypatch.setattr(emails, "render_admin_order", broken_render)
        report = await pipeline.run(db, await paid_order())

        assert report.failed_steps == ["admin_email"]
        assert report.emails_sent == ["customer_email"]
        assert len(mailer.to("ada@example.com")) == 1

    async def test_failures_are_isolated(self, db, pipeline, paid_order,
                                         mailer):
        async with db.begin():
            affiliate, _ = await affiliates.create_affiliate(
                db, email="promo@example.com", full_name="Promo King",
            )
        mailer.fail_recipients.update({"ada@example.com",
                                       "promo@example.com"})
        order = await paid_order(quantity=2, affiliate_ref=affiliate.ref_code)
        report = await pipeline.run(db, order)

        assert report.failed_steps == ["customer_email", "affiliate_email"]
        assert report.commissions_recorded == 1
        assert report.commission_total == 1000
        assert report.emails_sent == ["admin_email"]

    async def test_fixed_amount_commission(self, db, pipeline, paid_order,
                                           mailer):
        async with db.begin():
            affiliate, _ = await affiliates.create_affiliate(
                db, email="promo@example.com", full_name="Promo King",
            )
        order = await paid_order(quantity=4, affiliate_ref=affiliate.ref_code)
        async with db.begin():
            a = await affiliates.get_affiliate(db, affiliate.id)
            await affiliates.set_commission_rule(
                db, a, order.items[0].ticket_type,
                commission_type=COMMISSION_FIXED_AMOUNT, amount=300,
            )
        report = await pipeline.run(db, order)

        assert report.commission_total == 1200
        sale = mailer.to("promo@example.com")[0]
        assert order.order_id in sale.subject

    async def test_rerun_does_not_duplicate_commissions(self, db, pipeline,
                                                        paid_order, mailer):
        async with db.begin():
            affiliate, _ = await affiliates.create_affiliate(
                db, email="promo@example.com", full_name="Promo King",
            )
        order = await paid_order(affiliate_ref=affiliate.ref_code)
        await pipeline.run(db, order)
        report = await pipeline.run(db, order)

        assert report.commissions_recorded == 0
        async with db.begin():
            rows = (await db.execute(select(AffiliateCommission))
                    ).scalars().all()
        assert len(rows) == 1
        assert len(mailer.to("promo@example.com")) == 1

    async def test_unpaid_order_is_refused(self, db, pipeline, place_order,
                                           mailer):
        order_id = await place_order()
        async with db.begin():
            order = await ledger.require_order(db, order_id)
        with pytest.raises(NotPaid):
            await pipeline.run(db, order)
        assert mailer.sent == []

    async def test_without_admin_list(self, db, settings, mailer, assets,
                                      paid_order):
        quiet = FulfillmentPipeline(
            settings=replace(settings, admin_notify_emails=()),
            mailer=mailer, assets=assets,
        )
        report = await quiet.run(db, await paid_order())
        assert report.emails_sent == ["customer_email"]


class TestResendConfirmation:
    async def test_resends_with_stored_image(self, db, pipeline, paid_order,
                                             assets, mailer):
        order = await paid_order()
        await pipeline.run(db, order)
        async with db.begin():
            order = await ledger.require_order(db, order.order_id)

        report = await pipeline.resend_confirmation(db, order)
        assert report.ok
        assert len(mailer.to("ada@example.com")) == 2
        assert len(assets.uploads) == 1

    async def test_reissues_missing_image(self, db, pipeline, paid_order,
                                          assets):
        order = await paid_order()
        report = await pipeline.resend_confirmation(db, order)
        assert report.qr_code_url == f"https://cdn.test/qr/{order.order_id}.png"
        assert list(assets.uploads) == [order.order_id]

    async def test_refused_for_used_ticket(self, db, pipeline, paid_order,
                                           assets):
        order = await paid_order()
        order = await deactivate_ticket(db, assets, order.order_id)
        with pytest.raises(AlreadyDeactivated):
            await pipeline.resend_confirmation(db, order)

    async def test_refused_for_pending_order(self, db, pipeline,
                                             place_order):
        order_id = await place_order()
        async with db.begin():
            order = await ledger.require_order(db, order_id)
        with pytest.raises(NotPaid):
            await pipeline.resend_confirmation(db, order)

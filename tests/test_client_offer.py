"""
Client offer projection tests: seeding, locking on GM approval, totals.
"""

import pytest

from quote_pipeline.core.exceptions import ValidationError
from quote_pipeline.services.client_offer import (
    build_offer,
    check_locked_edit,
    lock_offer_lines,
    offer_totals,
    product_type_label,
    seed_lines,
)


def _request(**extra):
    request = {
        "id": "CRA26030201",
        "clientName": "Anadolu Trailer",
        "applicationVehicle": "Semi trailer",
        "expectedQty": 40,
        "products": [
            {
                "axleLocation": "rear",
                "articulationType": "steering_axle",
                "configurationType": "tridem",
                "quantity": 6,
                "tyreSize": "385/65R22.5",
                "loadsKg": 9000,
                "brakeType": "drum",
            },
            {"axleLocation": "other", "axleLocationOther": "n/a", "quantity": None},
        ],
        "sales": {"finalPrice": 1450},
    }
    request.update(extra)
    return request


class TestSeeding:
    def test_one_line_per_product(self):
        lines = seed_lines(_request())
        assert [line["id"] for line in lines] == ["product-1", "product-2"]
        assert lines[0]["description"] == "Rear / Steering Axle / Tridem"
        assert lines[0]["specification"] == "Tyre: 385/65R22.5 | Loads: 9000 | Brake: drum"
        assert lines[0]["quantity"] == 6
        assert lines[0]["unitPrice"] is None

    def test_placeholder_other_text_falls_back_to_vehicle(self):
        lines = seed_lines(_request())
        assert lines[1]["description"] == "Semi trailer"

    def test_type_label_uses_other_text(self):
        assert product_type_label({"axleLocation": "other", "axleLocationOther": "Middle"}) == "Middle"

    def test_build_offer_defaults(self):
        offer = build_offer(_request())
        assert offer["offerNumber"] == "CRA26030201"
        assert offer["recipientName"] == "Anadolu Trailer"
        assert offer["linesLocked"] is False

    def test_stored_lines_are_clamped(self):
        offer = build_offer(_request(clientOfferConfig={"lines": [
            {"id": "x", "quantity": 99_999, "unitPrice": -10, "sourceProductIndex": True},
        ]}))
        line = offer["lines"][0]
        assert line["quantity"] == 10_000
        assert line["unitPrice"] == 0.0
        assert line["sourceProductIndex"] is None


class TestLocking:
    def test_lock_fills_quantities_and_single_price(self):
        request = _request(products=[{"axleLocation": "front", "quantity": None}])
        offer = lock_offer_lines(request)
        assert offer["linesLocked"] is True
        assert offer["lines"][0]["quantity"] == 40
        assert offer["lines"][0]["unitPrice"] == 1450

    def test_multiple_lines_keep_missing_prices(self):
        offer = lock_offer_lines(_request())
        assert [line["unitPrice"] for line in offer["lines"]] == [None, None]
        assert [line["quantity"] for line in offer["lines"]] == [6, 40]

    def test_locking_is_one_way(self):
        locked = lock_offer_lines(_request())
        again = lock_offer_lines(_request(sales={"finalPrice": 1}), locked)
        assert again == locked

    def test_locked_quantity_cannot_change(self):
        locked = lock_offer_lines(_request())
        edited = {**locked, "lines": [dict(locked["lines"][0], quantity=7), locked["lines"][1]]}
        with pytest.raises(ValidationError) as exc:
            check_locked_edit(locked, edited)
        assert exc.value.field == "clientOfferConfig.lines.quantity"

    def test_locked_lines_cannot_be_unlocked_or_removed(self):
        locked = lock_offer_lines(_request())
        with pytest.raises(ValidationError):
            check_locked_edit(locked, {**locked, "linesLocked": False})
        with pytest.raises(ValidationError):
            check_locked_edit(locked, {**locked, "lines": locked["lines"][:1]})

    def test_remarks_stay_editable(self):
        locked = lock_offer_lines(_request())
        edited = {**locked, "lines": [dict(line, remark="ex works") for line in locked["lines"]]}
        check_locked_edit(locked, edited)

    def test_unlocked_offer_is_free(self):
        check_locked_edit(None, {"lines": []})
        check_locked_edit({"linesLocked": False, "lines": []}, {"lines": []})


class TestTotals:
    def test_totals_over_included_priced_lines(self):
        offer = {"lines": [
            {"id": "a", "include": True, "quantity": 3, "unitPrice": 10.25},
            {"id": "b", "include": False, "quantity": 1, "unitPrice": 100},
            {"id": "c", "include": True, "quantity": None, "unitPrice": 5},
        ]}
        totals = offer_totals(offer)
        assert totals == {"lines": {"a": 30.75}, "total": 30.75}

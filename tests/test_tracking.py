import pytest

from conftest import make_order, shipped_order, tracking_response
from errors import NoTrackingDataError, NotFoundError, PreconditionError, ProviderError
from tracking import TrackingReconciler, map_status, merge_history, parse_carrier_date, push_scans


class TestStatusMapping:
    @pytest.mark.parametrize(
        "carrier_status, expected",
        [
            ("Delivered", ("delivered", "delivered")),
            ("Out for Delivery", ("shipped", "shipped")),
            ("In Transit", ("shipped", "shipped")),
            ("Picked Up", ("shipped", "shipped")),
            ("Cancelled", ("cancelled", "cancelled")),
            ("RTO", ("cancelled", "cancelled")),
            ("IN TRANSIT", ("shipped", "shipped")),
            ("Manifested", None),
            (None, None),
        ],
    )
    def test_map_status(self, carrier_status, expected):
        assert map_status(carrier_status) == expected


def test_parse_carrier_date():
    assert parse_carrier_date("2026-10-03 08:30:00") == "2026-10-03T08:30:00"
    assert parse_carrier_date("03 10 2026 08:30:00") == "2026-10-03T08:30:00"
    assert parse_carrier_date("sometime soon") == "sometime soon"
    assert parse_carrier_date("") is None


def test_merge_history_skips_known_scans():
    existing = [{"timestamp": "t1", "activity": "Picked up"}]
    merged = merge_history(existing, [
        {"timestamp": "t1", "activity": "Picked up"},
        {"timestamp": "t2", "activity": "In transit"},
    ])
    assert [h["timestamp"] for h in merged] == ["t1", "t2"]


class TestUpdateTrackingInfo:
    def test_delivered_updates_both_statuses(self, reconciler, store, carrier):
        store.add_order(shipped_order("ord-1", "AWB1"))
        carrier.tracking["AWB1"] = tracking_response("Delivered", edd="2026-10-04 18:00:00")

        result = reconciler.update_tracking_info("ord-1")

        assert result["status"] == "delivered"
        order = store.load_order("ord-1")
        assert order["status"] == "delivered"
        assert order["shipping"]["status"] == "delivered"
        assert order["shipping"]["eta"] == "2026-10-04T18:00:00"
        assert order["shipping"]["currentLocation"] == "Nagpur Hub"
        assert order["shipping"]["lastUpdateAt"] is not None
        history = order["shipping"]["trackingHistory"]
        assert [h["activity"] for h in history] == ["Shipment picked up", "In transit"]
        assert history[0]["timestamp"] == "2026-10-02T10:00:00"
        assert history[0]["statusCode"] == 42

    def test_unrecognized_status_leaves_statuses_alone(self, reconciler, store, carrier):
        store.add_order(shipped_order("ord-1", "AWB1", status="processing"))
        carrier.tracking["AWB1"] = tracking_response("Manifested")

        reconciler.update_tracking_info("ord-1")

        order = store.load_order("ord-1")
        assert order["status"] == "processing"
        assert order["shipping"]["status"] == "processing"
        assert len(order["shipping"]["trackingHistory"]) == 2

    def test_repeated_scans_are_not_duplicated(self, reconciler, store, carrier):
        store.add_order(shipped_order("ord-1", "AWB1"))
        reconciler.update_tracking_info("ord-1")

        scans = tracking_response()["scans"] + [
            {"activity": "Out for delivery", "location": "Bengaluru", "date": "2026-10-04 07:00:00", "status_code": 19},
        ]
        carrier.tracking["AWB1"] = tracking_response("Out for Delivery", scans=scans)
        reconciler.update_tracking_info("ord-1")

        order = store.load_order("ord-1")
        assert len(order["shipping"]["trackingHistory"]) == 3
        assert order["shipping"]["currentLocation"] == "Bengaluru"

    def test_requires_awb(self, reconciler, store, carrier):
        store.add_order(make_order())

        with pytest.raises(PreconditionError):
            reconciler.update_tracking_info("ord-1")
        assert carrier.calls == []

    def test_unknown_order(self, reconciler):
        with pytest.raises(NotFoundError):
            reconciler.update_tracking_info("nope")

    def test_no_tracking_data(self, reconciler, store, carrier):
        store.add_order(shipped_order("ord-1", "AWB1"))
        carrier.tracking["AWB1"] = {"status": 404, "scans": [], "current_status": None, "edd": None}

        with pytest.raises(NoTrackingDataError):
            reconciler.update_tracking_info("ord-1")


class TestForceSync:
    def test_reports_before_and_after(self, reconciler, store, carrier):
        store.add_order(shipped_order("ord-1", "AWB1"))
        carrier.tracking["AWB1"] = tracking_response("Delivered")

        result = reconciler.force_sync("ord-1")

        assert result["updated"] is True
        assert result["previousStatus"] == "shipped"
        assert result["newStatus"] == "delivered"

    def test_nothing_new_is_not_an_error(self, reconciler, store, carrier):
        store.add_order(shipped_order("ord-1", "AWB1"))
        carrier.tracking["AWB1"] = {"status": 404, "scans": [], "current_status": None, "edd": None,
                                    "message": "Awaiting pickup scan"}

        result = reconciler.force_sync("ord-1")

        assert result["updated"] is False
        assert result["message"] == "No update available"
        assert result["previousStatus"] == result["newStatus"] == "shipped"

    def test_hard_failures_propagate(self, reconciler, store, carrier):
        store.add_order(shipped_order("ord-1", "AWB1"))
        carrier.tracking["AWB1"] = ProviderError("503 Service Unavailable")

        with pytest.raises(ProviderError):
            reconciler.force_sync("ord-1")


class TestBulkUpdateTracking:
    def test_failures_are_isolated(self, reconciler, store, carrier):
        for n in range(5):
            store.add_order(shipped_order(f"ord-{n}", f"AWB{n}"))
        carrier.tracking["AWB1"] = ProviderError("Shiprocket 500")
        carrier.tracking["AWB3"] = ProviderError("Shiprocket timeout")
        for n in (0, 2, 4):
            carrier.tracking[f"AWB{n}"] = tracking_response("Delivered")

        result = reconciler.bulk_update_tracking()

        assert (result["total"], result["successful"], result["failed"]) == (5, 3, 2)
        assert sorted(f["orderId"] for f in result["failures"]) == ["ord-1", "ord-3"]
        for n in (0, 2, 4):
            assert store.load_order(f"ord-{n}")["status"] == "delivered"
        for n in (1, 3):
            assert store.load_order(f"ord-{n}")["status"] == "shipped"

    def test_only_active_shipments_are_selected(self, reconciler, store, carrier):
        store.add_order(shipped_order("active", "AWB-A"))
        store.add_order(shipped_order("processing", "AWB-P", status="processing"))
        store.add_order(shipped_order("done", "AWB-D", status="delivered"))
        store.add_order(make_order("unshipped"))

        result = reconciler.bulk_update_tracking()

        assert result["total"] == 2
        tracked = sorted(c[1] for c in carrier.calls if c[0] == "track_by_awb")
        assert tracked == ["AWB-A", "AWB-P"]

    def test_pool_is_bounded(self, store, carrier):
        for n in range(8):
            store.add_order(shipped_order(f"ord-{n}", f"AWB{n}"))
        carrier.delay = 0.02
        reconciler = TrackingReconciler(carrier, store, max_workers=2)

        result = reconciler.bulk_update_tracking()

        assert result["successful"] == 8
        assert carrier.max_active <= 2

    def test_nothing_to_do(self, reconciler):
        assert reconciler.bulk_update_tracking() == {"total": 0, "successful": 0, "failed": 0, "failures": []}


class TestApplyCarrierPush:
    def test_delivered_push_updates_order(self, store):
        store.add_order(shipped_order("ord-1", "AWB1"))
        reconciler = TrackingReconciler(None, store)

        result = reconciler.apply_carrier_push("AWB1", "DELIVERED", [
            {"activity": "Delivered", "location": "Bengaluru", "date": "2026-10-04 15:10:00", "status_code": 7},
        ], edd="2026-10-04 18:00:00")

        assert result["orderId"] == "ord-1"
        assert (result["previousStatus"], result["status"]) == ("shipped", "delivered")
        order = store.load_order("ord-1")
        assert order["status"] == "delivered"
        assert order["shipping"]["status"] == "delivered"
        assert order["shipping"]["currentLocation"] == "Bengaluru"
        assert order["shipping"]["eta"] == "2026-10-04T18:00:00"
        assert order["shipping"]["trackingHistory"][-1]["timestamp"] == "2026-10-04T15:10:00"

    def test_repeated_push_is_not_duplicated(self, store):
        store.add_order(shipped_order("ord-1", "AWB1"))
        reconciler = TrackingReconciler(None, store)
        scans = [{"activity": "In transit", "location": "Nagpur Hub", "date": "2026-10-03 08:30:00", "status_code": 18}]

        reconciler.apply_carrier_push("AWB1", "IN TRANSIT", scans)
        reconciler.apply_carrier_push("AWB1", "IN TRANSIT", scans)

        assert len(store.load_order("ord-1")["shipping"]["trackingHistory"]) == 1

    def test_unmapped_push_only_records_history(self, store):
        store.add_order(shipped_order("ord-1", "AWB1", status="processing"))
        reconciler = TrackingReconciler(None, store)

        result = reconciler.apply_carrier_push("AWB1", "Pickup Exception", [
            {"activity": "Pickup Exception", "location": "New Delhi", "date": "2026-10-02 09:00:00", "status_code": None},
        ])

        assert result["status"] == "processing"
        order = store.load_order("ord-1")
        assert order["status"] == "processing"
        assert order["shipping"]["status"] == "processing"
        assert [h["activity"] for h in order["shipping"]["trackingHistory"]] == ["Pickup Exception"]

    def test_unknown_awb(self, store):
        with pytest.raises(NotFoundError):
            TrackingReconciler(None, store).apply_carrier_push("NOPE", "DELIVERED")


def test_push_scans():
    payload = {
        "awb": "AWB1",
        "current_status": "IN TRANSIT",
        "scans": [{"date": "2026-10-03 08:30:00", "activity": "Reached hub", "location": "Nagpur", "sr-status": 18}],
    }
    assert push_scans(payload) == [
        {"activity": "Reached hub", "location": "Nagpur", "date": "2026-10-03 08:30:00", "status_code": 18}
    ]

    bare = {"awb": "AWB1", "current_status": "OUT FOR DELIVERY", "current_timestamp": "04 10 2026 07:00:00",
            "location": "Bengaluru", "current_status_id": 17}
    assert push_scans(bare) == [
        {"activity": "OUT FOR DELIVERY", "location": "Bengaluru", "date": "04 10 2026 07:00:00", "status_code": 17}
    ]

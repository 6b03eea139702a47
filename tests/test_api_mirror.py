"""Tests for the quality and shipment routes."""

from pwms.types import parse_datetime


class TestQuality:
    def test_save_and_read_back(self, client):
        response = client.post(
            "/quality",
            json={"batchNumber": "B-1", "status": "passed", "notes": "ok", "checkedBy": "ana"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Quality status saved successfully"
        assert body["data"]["status"] == "passed"
        assert body["data"]["checkedBy"] == "ana"

        response = client.get("/quality", params={"batchNumber": "B-1"})
        assert response.json() == {"success": True, "batchNumber": "B-1", "quality": body["data"]}

    def test_checked_date_is_iso_utc(self, client):
        data = client.post("/quality", json={"batchNumber": "B-1", "status": "passed"}).json()["data"]

        checked = parse_datetime(data["checkedDate"])
        assert checked is not None
        assert checked.utcoffset().total_seconds() == 0
        assert data["notes"] is None

    def test_missing_status_is_400(self, client):
        response = client.post("/quality", json={"batchNumber": "B-1"})

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert "status" in response.json()["error"]

    def test_missing_batch_number_is_400(self, client):
        assert client.post("/quality", json={"status": "passed"}).status_code == 400

    def test_get_all(self, client):
        client.post("/quality", json={"batchNumber": "B-1", "status": "passed"})
        client.post("/quality", json={"batchNumber": "B-2", "status": "failed"})

        quality = client.get("/quality").json()["quality"]
        assert set(quality) == {"B-1", "B-2"}

    def test_unknown_batch_returns_null(self, client):
        assert client.get("/quality", params={"batchNumber": "B-404"}).json()["quality"] is None

    def test_save_registers_change(self, client):
        client.post("/quality", json={"batchNumber": "B-1", "status": "passed"})

        [change] = client.get("/sync").json()["changes"]
        assert change["type"] == "quality"
        assert change["batchNumber"] == "B-1"
        assert change["source"] == "web"
        assert change["data"]["status"] == "passed"


class TestShipment:
    def test_minimal_shipment_defaults(self, client):
        response = client.post("/shipment", json={"batchNumber": "B-100"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["shipped"] is True
        assert parse_datetime(data["shippedDate"]) is not None

        shipment = client.get("/shipment", params={"batchNumber": "B-100"}).json()
        assert shipment["batchNumber"] == "B-100"
        assert shipment["shipment"]["shipped"] is True

    def test_explicit_fields_kept(self, client):
        client.post(
            "/shipment",
            json={
                "batchNumber": "B-2",
                "shipped": False,
                "shippedDate": "2026-02-01T08:00:00Z",
                "shippedBy": "joe",
            },
        )

        shipment = client.get("/shipment", params={"batchNumber": "B-2"}).json()["shipment"]
        assert shipment["shipped"] is False
        assert shipment["shippedDate"] == "2026-02-01T08:00:00Z"
        assert shipment["shippedBy"] == "joe"

    def test_missing_batch_number_is_400(self, client):
        response = client.post("/shipment", json={"shipped": True})

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Missing required field: batchNumber is required",
        }

    def test_get_all(self, client):
        client.post("/shipment", json={"batchNumber": "B-1"})
        assert set(client.get("/shipment").json()["shipments"]) == {"B-1"}

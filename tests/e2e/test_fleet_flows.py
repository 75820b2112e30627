"""
E2E tests cho quản lý đội xe (Fleet Flows).

Test UC-08: Đưa xe vào bảo dưỡng và trả xe về hoạt động
Test UC-09: Gỡ xe / tài xế bị kẹt ON_TRIP
Test UC-10: Thống kê vận đơn
"""

import pytest

from backend.app.models.consignment import ConsignmentStatus
from backend.app.models.fleet import DriverStatus, VehicleStatus
from tests.utils.factories import (
    create_test_consignment,
    create_test_driver,
    create_test_vehicle,
)

HEADERS = {"X-Username": "fleet01"}


@pytest.mark.e2e
@pytest.mark.p0
def test_uc08_vehicle_maintenance_cycle(test_client, test_db):
    """
    Test Description: UC-08 - Bảo dưỡng xe

    Given:
    - Một xe AVAILABLE, một tài xế AVAILABLE, một vận đơn BOOKED

    When:
    - Đưa xe vào MAINTENANCE, thử gán xe, trả xe về AVAILABLE rồi gán lại

    Then:
    - Xe MAINTENANCE không nằm trong danh sách xe sẵn sàng, gán xe bị 409
    - Sau khi trả về AVAILABLE thì gán xe thành công
    """
    vehicle = create_test_vehicle(test_db)
    driver = create_test_driver(test_db)
    consignment = create_test_consignment(test_db)
    test_db.commit()
    vid = str(vehicle.id)

    response = test_client.put(
        f"/api/vehicles/{vid}/status",
        headers=HEADERS,
        json={"status": "MAINTENANCE", "reason": "Bảo dưỡng định kỳ"},
    )
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "MAINTENANCE"

    available = test_client.get("/api/vehicles/available").json()
    assert vid not in [v["id"] for v in available]

    assign = {"vehicle_id": vid, "driver_id": str(driver.id)}
    response = test_client.post(f"/api/consignments/{consignment.id}/assign", json=assign)
    assert response.status_code == 409
    assert response.json()["error_code"] == "VEHICLE_NOT_AVAILABLE"

    response = test_client.put(f"/api/vehicles/{vid}/status", json={"status": "ON_TRIP"})
    assert response.status_code == 422

    response = test_client.put(f"/api/vehicles/{vid}/status", json={"status": "AVAILABLE"})
    assert response.status_code == 200, response.text

    response = test_client.post(f"/api/consignments/{consignment.id}/assign", json=assign)
    assert response.status_code == 200, response.text
    assert test_client.get(f"/api/vehicles/{vid}").json()["status"] == "ON_TRIP"

    response = test_client.put(f"/api/vehicles/{vid}", json={"is_active": False})
    assert response.status_code == 409
    assert response.json()["error_code"] == "VEHICLE_IN_USE"


@pytest.mark.e2e
@pytest.mark.p0
def test_uc09_release_stuck_driver(test_client, test_db):
    """
    Test Description: UC-09 - Xe / tài xế kẹt ON_TRIP không còn vận đơn nào

    Then:
    - POST /api/drivers/:id/release-vehicle trả tài xế và xe về AVAILABLE
    - Gọi lại lần nữa thì báo tài xế không giữ xe (400)
    """
    vehicle = create_test_vehicle(test_db, status=VehicleStatus.ON_TRIP)
    driver = create_test_driver(test_db, status=DriverStatus.ON_TRIP, current_vehicle_id=vehicle.id)
    test_db.commit()

    response = test_client.post(f"/api/drivers/{driver.id}/release-vehicle", headers=HEADERS)
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["status"] == "AVAILABLE"
    assert data["current_vehicle_id"] is None

    drivers = test_client.get("/api/drivers/available").json()
    assert str(driver.id) in [d["id"] for d in drivers]
    assert test_client.get(f"/api/vehicles/{vehicle.id}").json()["status"] == "AVAILABLE"

    response = test_client.post(f"/api/drivers/{driver.id}/release-vehicle")
    assert response.status_code == 400
    assert response.json()["error_code"] == "DRIVER_HAS_NO_VEHICLE"

    response = test_client.put(f"/api/drivers/{driver.id}", json={"name": "Ravi Kumar"})
    assert response.status_code == 200, response.text
    assert response.json()["name"] == "Ravi Kumar"

    response = test_client.get("/api/drivers/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404


@pytest.mark.e2e
@pytest.mark.p2
def test_uc10_consignment_statistics(test_client, test_db):
    create_test_consignment(test_db, freight=1000)
    create_test_consignment(test_db, status=ConsignmentStatus.DELIVERED, freight=1500)
    test_db.commit()

    response = test_client.get("/api/consignments/statistics")

    assert response.status_code == 200, response.text
    stats = response.json()
    assert stats["total_consignments"] == 2
    assert stats["total_amount"] == 2500.0
    assert stats["by_status"]["DELIVERED"] == {"count": 1, "amount": 1500.0}
    assert stats["by_payment_status"] == {"UNBILLED": {"count": 1, "amount": 1500.0}}

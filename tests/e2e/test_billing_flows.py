"""
E2E tests cho các luồng hóa đơn cước (Freight Bill Flows).

Test UC-05: Lập hóa đơn từ vận đơn đã giao, gửi và ghi nhận thanh toán
Test UC-06: Gửi hóa đơn khi mail API lỗi
Test UC-07: Hủy / xóa hóa đơn và thống kê
"""

import pytest

from backend.app.core.error_handler import ExternalServiceError
from backend.app.models.consignment import ConsignmentStatus, PaymentStatus
from tests.utils.factories import create_test_consignment, create_test_customer

HEADERS = {"X-Username": "accountant01"}


def _setup_delivered(test_db, freights=(1000, 1500), **customer_kwargs):
    customer = create_test_customer(test_db, **customer_kwargs)
    consignments = [
        create_test_consignment(
            test_db, consignor=customer, status=ConsignmentStatus.DELIVERED, freight=freight
        )
        for freight in freights
    ]
    test_db.commit()
    return customer, consignments


@pytest.mark.e2e
@pytest.mark.p0
def test_uc05_bill_lifecycle(test_client, test_db, mailbox):
    """
    Test Description: UC-05 - Lập hóa đơn, gửi, thanh toán

    Given:
    - Khách hàng có hai vận đơn đã giao, chưa lập hóa đơn (1000 và 1500)

    When:
    - Xem danh sách vận đơn chưa lập hóa đơn
    - Lập hóa đơn có giảm trừ 200, chuyển GENERATED, gửi email, ghi nhận thanh toán

    Then:
    - total_amount 2500, final_amount 2300, vận đơn BILLED rồi PAID
    - Hóa đơn đã thanh toán không sửa được số hóa đơn (422)
    """
    customer, (c1, c2) = _setup_delivered(
        test_db, name="Karnataka Agro", email="accounts@agro.example.com"
    )

    response = test_client.get(f"/api/customers/{customer.id}/unbilled-consignments")
    assert response.status_code == 200, response.text
    unbilled = response.json()
    assert unbilled["count"] == 2
    assert unbilled["total_amount"] == 2500.0

    response = test_client.post(
        "/api/freight-bills",
        headers=HEADERS,
        json={
            "customer_id": str(customer.id),
            "billing_branch": "Branch-A",
            "consignment_ids": [str(c1.id), str(c2.id)],
            "adjustments": [{"type": "DISCOUNT", "description": "loyalty", "amount": 200}],
        },
    )
    assert response.status_code == 201, response.text
    bill = response.json()
    assert bill["status"] == "DRAFT"
    assert bill["total_amount"] == 2500.0
    assert bill["final_amount"] == 2300.0
    assert bill["created_by"] == "accountant01"
    assert [line["consignment_id"] for line in bill["lines"]] == [str(c1.id), str(c2.id)]

    test_db.refresh(c1)
    assert c1.payment_status == PaymentStatus.BILLED

    unbilled = test_client.get(f"/api/customers/{customer.id}/unbilled-consignments").json()
    assert unbilled["count"] == 0

    bill_id = bill["id"]
    response = test_client.put(
        f"/api/freight-bills/{bill_id}/status",
        json={"status": "GENERATED", "version": bill["version"]},
    )
    assert response.status_code == 200, response.text
    version = response.json()["version"]

    response = test_client.post(f"/api/freight-bills/{bill_id}/send", json={"version": version})
    assert response.status_code == 200, response.text
    sent = response.json()
    assert sent["status"] == "SENT"
    assert sent["recipient"] == "accounts@agro.example.com"
    assert mailbox.subjects() == [f"Freight Bill {bill['bill_number']}"]

    response = test_client.post(f"/api/freight-bills/{bill_id}/mark-paid", json={"version": sent["version"]})
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "PAID"

    test_db.refresh(c1)
    test_db.refresh(c2)
    assert c1.payment_status == PaymentStatus.PAID
    assert c2.payment_status == PaymentStatus.PAID

    response = test_client.put(f"/api/freight-bills/{bill_id}", json={"bill_number": "KVL202699999"})
    assert response.status_code == 422
    assert response.json()["error_code"] == "BILL_LOCKED"


@pytest.mark.e2e
@pytest.mark.p0
def test_uc05_second_bill_for_same_consignment_is_rejected(test_client, test_db):
    customer, (c1, c2) = _setup_delivered(test_db)
    payload = {
        "customer_id": str(customer.id),
        "billing_branch": "Branch-A",
        "consignment_ids": [str(c1.id)],
    }

    assert test_client.post("/api/freight-bills", json=payload).status_code == 201

    response = test_client.post(
        "/api/freight-bills", json={**payload, "consignment_ids": [str(c2.id), str(c1.id)]}
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ALREADY_BILLED"

    test_db.refresh(c2)
    assert c2.payment_status == PaymentStatus.UNBILLED


@pytest.mark.e2e
@pytest.mark.p0
def test_uc06_send_bill_mail_failure(test_client, test_db, mailbox):
    """
    Test Description: UC-06 - Mail API lỗi khi gửi hóa đơn

    Then:
    - Trả 502 kèm mã lỗi và dữ liệu hóa đơn
    - Hóa đơn vẫn ở trạng thái SENT
    """
    customer, consignments = _setup_delivered(test_db, email="accounts@agro.example.com")
    response = test_client.post(
        "/api/freight-bills",
        json={
            "customer_id": str(customer.id),
            "billing_branch": "Branch-A",
            "consignment_ids": [str(c.id) for c in consignments],
            "status": "GENERATED",
        },
    )
    bill_id = response.json()["id"]
    mailbox.fail_with = ExternalServiceError("timeout", error_code="NOTIFICATION_FAILED")

    response = test_client.post(f"/api/freight-bills/{bill_id}/send", json={})

    assert response.status_code == 502
    body = response.json()
    assert body["error_code"] == "NOTIFICATION_FAILED"
    assert body["details"]["bill"]["status"] == "SENT"
    assert body["details"]["recipient"] == "accounts@agro.example.com"

    bill = test_client.get(f"/api/freight-bills/{bill_id}").json()
    assert bill["status"] == "SENT"
    assert bill["sent_at"] is not None


@pytest.mark.e2e
@pytest.mark.p1
def test_uc07_cancel_delete_and_statistics(test_client, test_db):
    """
    Test Description: UC-07 - Hủy / xóa hóa đơn, thống kê

    Then:
    - Hủy hóa đơn trả vận đơn về UNBILLED, có thể lập hóa đơn lại
    - Hóa đơn đã hủy không tính vào thống kê
    - Xóa hóa đơn DRAFT trả 200 và hóa đơn biến mất (404)
    """
    customer, (c1, c2) = _setup_delivered(test_db, freights=(1000, 4000))

    def create(ids):
        response = test_client.post(
            "/api/freight-bills",
            json={"customer_id": str(customer.id), "billing_branch": "Branch-A", "consignment_ids": ids},
        )
        assert response.status_code == 201, response.text
        return response.json()

    cancelled = create([str(c1.id)])
    response = test_client.post(
        f"/api/freight-bills/{cancelled['id']}/cancel", json={"reason": "Sai chi nhánh"}
    )
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "CANCELLED"

    rebilled = create([str(c1.id)])
    assert rebilled["bill_number"] != cancelled["bill_number"]

    doomed = create([str(c2.id)])
    response = test_client.delete(
        f"/api/freight-bills/{doomed['id']}", params={"version": doomed["version"]}
    )
    assert response.status_code == 200, response.text
    assert test_client.get(f"/api/freight-bills/{doomed['id']}").status_code == 404

    stats = test_client.get("/api/freight-bills/statistics").json()
    assert stats["total_bills"] == 1
    assert stats["total_amount"] == 1000.0
    assert stats["pending_bills"] == 1
    assert "CANCELLED" not in stats["by_status"]

    listing = test_client.get("/api/freight-bills", params={"status": "CANCELLED"}).json()
    assert [item["id"] for item in listing["items"]] == [cancelled["id"]]


@pytest.mark.e2e
@pytest.mark.p1
def test_uc07_adjustments_endpoint(test_client, test_db):
    customer, consignments = _setup_delivered(test_db)
    bill = test_client.post(
        "/api/freight-bills",
        json={
            "customer_id": str(customer.id),
            "billing_branch": "Branch-A",
            "consignment_ids": [str(c.id) for c in consignments],
        },
    ).json()

    response = test_client.put(
        f"/api/freight-bills/{bill['id']}/adjustments",
        json={
            "version": bill["version"],
            "adjustments": [
                {"type": "FUEL_SURCHARGE", "description": "Phụ phí xăng dầu", "amount": 150},
            ],
        },
    )
    assert response.status_code == 200, response.text
    assert response.json()["final_amount"] == 2650.0

    response = test_client.put(
        f"/api/freight-bills/{bill['id']}/adjustments",
        json={"adjustments": [{"type": "DISCOUNT", "description": "Quá tay", "amount": 9999}]},
    )
    assert response.status_code == 400
    assert response.json()["error_code"] == "FINAL_AMOUNT_NEGATIVE"

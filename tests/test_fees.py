from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from computations import payment_status
from conftest import auth


@pytest.fixture
def fee_type(client, admin):
    res = client.post("/api/fees/types", headers=auth(admin),
                      json={"name": "Tuition Fee", "code": "tuition", "category": "Academic"})
    assert res.status_code == 201
    return res.json()["data"]["feeType"]


@pytest.fixture
def structure(client, admin, classroom, fee_type):
    due = (datetime.utcnow() + timedelta(days=30)).strftime("%Y-%m-%d")
    res = client.post("/api/fees/structures", headers=auth(admin), json={
        "class": str(classroom["_id"]), "feeType": fee_type["id"], "amount": 1000, "dueDate": due,
    })
    assert res.status_code == 201
    return res.json()["data"]["feeStructure"]


def _pay(client, admin, student, fee_type, amount, **extra):
    return client.post("/api/fees/payments", headers=auth(admin), json={
        "student": str(student["_id"]), "feeType": fee_type["id"], "amount": amount,
        "paymentMethod": "Cash", **extra,
    })


def test_fee_type_code_is_uppercased_and_unique(client, admin, fee_type):
    assert fee_type["code"] == "TUITION"
    res = client.post("/api/fees/types", headers=auth(admin),
                      json={"name": "Tuition again", "code": "TUITION"})
    assert res.status_code == 400


def test_structure_reports_net_amount(client, admin, classroom, fee_type):
    res = client.post("/api/fees/structures", headers=auth(admin), json={
        "class": str(classroom["_id"]), "feeType": fee_type["id"], "amount": 2000, "dueDate": "2030-01-01",
        "discount": {"type": "Percentage", "value": 25},
    })
    assert res.status_code == 201
    assert res.json()["data"]["feeStructure"]["netAmount"] == 1500


def test_full_payment_is_paid_and_gets_receipt(client, admin, student, fee_type, structure):
    res = _pay(client, admin, student, fee_type, 1000)
    assert res.status_code == 201
    payment = res.json()["data"]["payment"]
    assert payment["totalAmount"] == 1000
    assert payment["status"] == "Paid"
    assert payment["remainingAmount"] == 0
    now = datetime.utcnow()
    assert payment["receiptNumber"] == f"RCP{now.year}{now.month:02d}0001"

    res = _pay(client, admin, student, fee_type, 1000)
    assert res.status_code == 400
    assert res.json()["message"] == "Payment already recorded for this fee type"


def test_each_payment_status_follows_its_own_amounts(client, admin, student, fee_type, structure, db):
    first = _pay(client, admin, student, fee_type, 600).json()["data"]["payment"]
    assert first["status"] == "Partial"
    assert first["remainingAmount"] == 400
    second = _pay(client, admin, student, fee_type, 400).json()["data"]["payment"]
    assert second["receiptNumber"] != first["receiptNumber"]

    stored = {p["receiptNumber"]: p for p in db["feepayment"].find()}
    assert (stored[first["receiptNumber"]]["paidAmount"], stored[first["receiptNumber"]]["dueAmount"]) == (600, 1000)
    assert (stored[second["receiptNumber"]]["paidAmount"], stored[second["receiptNumber"]]["dueAmount"]) == (400, 400)
    for p in stored.values():
        assert p["status"] == payment_status(p["paidAmount"], p["dueAmount"], p["dueDate"])

    items = client.get("/api/fees/payments", headers=auth(admin)).json()["data"]["items"]
    assert {p["receiptNumber"]: p["status"] for p in items} == {
        first["receiptNumber"]: "Partial", second["receiptNumber"]: "Paid",
    }
    assert _pay(client, admin, student, fee_type, 100).status_code == 400


def test_pending_payment_reads_overdue_after_due_date(client, admin, student, fee_type, db):
    payment_id = db["feepayment"].insert_one({
        "student": student["_id"], "feeType": ObjectId(fee_type["id"]), "receiptNumber": "RCP2000010001",
        "dueAmount": 1000, "paidAmount": 0, "totalAmount": 0, "status": "Pending", "paymentMethod": "Cash",
        "paymentDate": datetime.utcnow() - timedelta(days=10), "dueDate": datetime.utcnow() - timedelta(days=1),
    }).inserted_id

    items = client.get("/api/fees/payments", headers=auth(admin)).json()["data"]["items"]
    assert items[0]["status"] == "Overdue"
    overdue = client.get("/api/fees/payments?status=Overdue", headers=auth(admin)).json()["data"]["items"]
    assert [p["id"] for p in overdue] == [str(payment_id)]
    assert client.get("/api/fees/payments?status=Pending", headers=auth(admin)).json()["data"]["items"] == []

    receipt = client.get(f"/api/fees/payments/{payment_id}/receipt", headers=auth(admin)).json()["data"]["receipt"]
    assert receipt["paymentDetails"]["status"] == "Overdue"
    assert client.get("/api/fees/stats", headers=auth(admin)).json()["data"]["summary"]["overduePayments"] == 1


def test_total_includes_late_fee_minus_discount(client, admin, student, fee_type, structure):
    payment = _pay(client, admin, student, fee_type, 1000, lateFee=50, discount=20).json()["data"]["payment"]
    assert payment["totalAmount"] == 1030


def test_payment_without_structure_is_not_found(client, admin, student):
    other_type = client.post("/api/fees/types", headers=auth(admin),
                             json={"name": "Transport", "code": "BUS", "category": "Transport"}).json()["data"]["feeType"]
    res = _pay(client, admin, student, other_type, 100)
    assert res.status_code == 404


def test_teacher_cannot_record_payments(client, teacher, student, fee_type, structure):
    assert _pay(client, teacher, student, fee_type, 1000).status_code == 403


def test_receipt_visible_to_parent_not_to_other_student(client, admin, parent, student, make_student,
                                                       classroom, fee_type, structure):
    payment = _pay(client, admin, student, fee_type, 1000).json()["data"]["payment"]
    res = client.get(f"/api/fees/payments/{payment['id']}/receipt", headers=auth(parent))
    assert res.status_code == 200
    receipt = res.json()["data"]["receipt"]
    assert receipt["receiptNumber"] == payment["receiptNumber"]
    assert receipt["feeDetails"]["feeType"] == "Tuition Fee"
    assert receipt["paymentDetails"]["method"] == "Cash"

    other = make_student(classroom)
    res = client.get(f"/api/fees/payments/{payment['id']}/receipt", headers=auth(other["account"]))
    assert res.status_code == 403


def test_student_fee_status(client, admin, student, fee_type, structure):
    _pay(client, admin, student, fee_type, 250)
    res = client.get(f"/api/fees/student/{student['_id']}/status", headers=auth(student["account"]))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["summary"]["totalFees"] == 1000
    assert data["summary"]["totalPending"] == 750
    assert data["feeStatus"][0]["status"] == "Partial"
    assert data["feeStatus"][0]["remainingAmount"] == 750


def test_fee_stats(client, admin, student, fee_type, structure):
    _pay(client, admin, student, fee_type, 1000)
    res = client.get("/api/fees/stats", headers=auth(admin))
    assert res.status_code == 200
    summary = res.json()["data"]["summary"]
    assert summary["totalCollected"] == 1000
    assert summary["totalPayments"] == 1

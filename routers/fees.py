from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query

from computations import (
    days_overdue, format_receipt_number, net_amount, payment_status, payment_total, receipt_prefix,
    remaining_amount,
)
from database import (
    and_query, collection_name, create_document, find_by_id, get_collection, last_suffix,
    next_sequence, populate, populate_many, to_object_id,
)
from exceptions import ConflictError, NotFoundError
from logging_config import logger
from pagination import PageParams, date_filter, page_params, paginate
from policies import Principal, enforce
from responses import ok, serialize_doc, serialize_list
from routers.sessions import active_session_id
from schemas import Classroom, FeePayment, FeeStructure, FeeType, PaymentPayload, Session, Student, User
from security import authorize, get_current_user, get_principal

router = APIRouter(prefix="/fees", tags=["fees"])

PAYMENTS = collection_name(FeePayment)


def generate_receipt_number(when: Optional[datetime] = None) -> str:
    when = when or datetime.utcnow()
    prefix = receipt_prefix(when)
    floor = last_suffix(PAYMENTS, "receiptNumber", prefix, 4)
    return format_receipt_number(when, next_sequence(f"receipt:{prefix}", floor))


def _with_net_amount(structure: Dict[str, Any]) -> Dict[str, Any]:
    structure["netAmount"] = net_amount(structure.get("amount", 0), structure.get("discount"))
    return structure


def _populate_payment(doc: Dict[str, Any]) -> Dict[str, Any]:
    populate(doc, "student", Student, ("admissionNumber", "rollNumber", "user", "class"))
    if isinstance(doc.get("student"), dict):
        populate(doc["student"], "user", User, ("firstName", "lastName"))
        populate(doc["student"], "class", Classroom, ("name", "grade"))
    populate(doc, "feeType", FeeType, ("name", "description", "code"))
    populate(doc, "collectedBy", User, ("firstName", "lastName"))
    return doc


def pending_fees(student: Dict[str, Any]) -> float:
    """Outstanding net amount across the fee structures of the student's class."""
    structures = get_collection(FeeStructure).find({"class": student.get("class"), "isActive": True})
    paid: Dict[ObjectId, float] = {}
    for p in get_collection(FeePayment).find({"student": student["_id"], "status": {"$ne": "Cancelled"}},
                                             {"feeType": 1, "paidAmount": 1}):
        paid[p["feeType"]] = paid.get(p["feeType"], 0) + p.get("paidAmount", 0)
    return sum(remaining_amount(net_amount(s["amount"], s.get("discount")), paid.get(s["feeType"], 0))
               for s in structures)


def current_status(payment: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Status of one payment from its own paid and due amounts, as of ``now``."""
    if payment.get("status") == "Cancelled":
        return "Cancelled"
    return payment_status(payment.get("paidAmount", 0), payment.get("dueAmount", 0), payment.get("dueDate"), now)


def status_clause(status: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Query matching payments whose current status is ``status``.

    Pending and Overdue depend on the clock, so they are matched on dueDate
    rather than on the stored value.
    """
    now = now or datetime.utcnow()
    unpaid = {"$in": ["Pending", "Overdue"]}
    if status == "Overdue":
        return {"status": unpaid, "dueDate": {"$lt": now}}
    if status == "Pending":
        return {"status": unpaid, "$or": [{"dueDate": None}, {"dueDate": {"$gte": now}}]}
    return {"status": status}


# -------------------- Fee types -------------------- #

@router.get("/types")
def list_fee_types(
    session: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    is_active: bool = Query(True, alias="isActive"),
    user=Depends(get_current_user),
):
    filt: Dict[str, Any] = {"isActive": is_active}
    if session:
        filt["session"] = to_object_id(session, "Session")
    if category:
        filt["category"] = category
    docs = list(get_collection(FeeType).find(filt).sort([("name", 1), ("_id", 1)]))
    return ok({"items": serialize_list(docs)})


@router.post("/types", status_code=201)
def create_fee_type(payload: FeeType, user=Depends(authorize("Admin"))):
    doc = payload.to_document()
    if doc.get("session") is None:
        doc["session"] = active_session_id()
    types = get_collection(FeeType)
    if types.find_one({"code": doc["code"], "session": doc["session"]}):
        raise ConflictError("Fee type with this code already exists for this session")
    doc["createdBy"] = user["_id"]
    new_id = create_document(collection_name(FeeType), doc)
    return ok({"feeType": serialize_doc(types.find_one({"_id": ObjectId(new_id)}))},
              "Fee type created successfully")


# -------------------- Fee structures -------------------- #

@router.get("/structures")
def list_fee_structures(
    class_id: Optional[str] = Query(None, alias="class"),
    session: Optional[str] = Query(None),
    fee_type: Optional[str] = Query(None, alias="feeType"),
    is_active: bool = Query(True, alias="isActive"),
    params: PageParams = Depends(page_params),
    user=Depends(get_current_user),
):
    filt: Dict[str, Any] = {"isActive": is_active}
    if class_id:
        filt["class"] = to_object_id(class_id, "Class")
    if session:
        filt["session"] = to_object_id(session, "Session")
    if fee_type:
        filt["feeType"] = to_object_id(fee_type, "Fee type")
    docs, meta = paginate(get_collection(FeeStructure), filt, params, default_sort=(("createdAt", -1),),
                          allowed_sorts=("amount", "dueDate", "createdAt"))
    for doc in docs:
        _with_net_amount(doc)
    populate_many(docs, "class", Classroom, ("name", "grade"))
    populate_many(docs, "feeType", FeeType, ("name", "description"))
    populate_many(docs, "session", Session, ("name",))
    populate_many(docs, "createdBy", User, ("firstName", "lastName"))
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.post("/structures", status_code=201)
def create_fee_structure(payload: FeeStructure, user=Depends(authorize("Admin"))):
    doc = payload.to_document()
    classroom = find_by_id(Classroom, doc["class"], "Class")
    find_by_id(FeeType, doc["feeType"], "Fee type")
    if doc.get("session") is None:
        doc["session"] = classroom.get("session") or active_session_id()

    structures = get_collection(FeeStructure)
    if structures.find_one({"class": doc["class"], "feeType": doc["feeType"], "session": doc["session"]}):
        raise ConflictError("Fee structure already exists for this class and fee type")
    doc["createdBy"] = user["_id"]
    new_id = create_document(collection_name(FeeStructure), doc)

    created = _with_net_amount(structures.find_one({"_id": ObjectId(new_id)}))
    populate(created, "class", Classroom, ("name", "grade"))
    populate(created, "feeType", FeeType, ("name", "description"))
    return ok({"feeStructure": serialize_doc(created)}, "Fee structure created successfully")


# -------------------- Payments -------------------- #

@router.get("/payments")
def list_payments(
    student: Optional[str] = Query(None),
    class_id: Optional[str] = Query(None, alias="class"),
    fee_type: Optional[str] = Query(None, alias="feeType"),
    status: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    params: PageParams = Depends(page_params),
    principal: Principal = Depends(get_principal),
):
    scope = enforce(principal, "fee_payment", "list")
    filt: Dict[str, Any] = {}
    if student:
        filt["student"] = to_object_id(student, "Student")
    if fee_type:
        filt["feeType"] = to_object_id(fee_type, "Fee type")
    now = datetime.utcnow()
    status_filter = status_clause(status, now) if status else {}
    dates = date_filter(None, start_date, end_date)
    if dates:
        filt["paymentDate"] = dates
    class_clause: Dict[str, Any] = {}
    if class_id:
        in_class = get_collection(Student).find({"class": to_object_id(class_id, "Class")}, {"_id": 1})
        class_clause = {"student": {"$in": [s["_id"] for s in in_class]}}

    docs, meta = paginate(get_collection(FeePayment), and_query(scope, filt, status_filter, class_clause), params,
                          default_sort=(("paymentDate", -1),),
                          allowed_sorts=("paymentDate", "totalAmount", "receiptNumber", "status"))
    for doc in docs:
        doc["status"] = current_status(doc, now)
        _populate_payment(doc)
    return ok({"items": serialize_list(docs), "pagination": meta})


@router.post("/payments", status_code=201)
def record_payment(payload: PaymentPayload, principal: Principal = Depends(get_principal)):
    enforce(principal, "fee_payment", "create")
    student = find_by_id(Student, payload.student, "Student")
    structure_filter: Dict[str, Any] = {"class": student.get("class"), "feeType": payload.fee_type, "isActive": True}
    structures = get_collection(FeeStructure)
    structure = None
    if student.get("session"):
        structure = structures.find_one({**structure_filter, "session": student["session"]})
    structure = structure or structures.find_one(structure_filter)
    if not structure:
        raise NotFoundError(message="Fee structure not found for this student and fee type")

    payments = get_collection(FeePayment)
    due = net_amount(structure["amount"], structure.get("discount"))
    previously_paid = sum(p.get("paidAmount", 0) for p in payments.find(
        {"student": student["_id"], "feeType": payload.fee_type, "status": {"$ne": "Cancelled"}}, {"paidAmount": 1}))
    settled = payments.find_one({"student": student["_id"], "feeType": payload.fee_type, "status": "Paid"})
    if settled or (previously_paid and previously_paid >= due):
        raise ConflictError("Payment already recorded for this fee type")
    owed = due - previously_paid
    now = datetime.utcnow()

    doc = FeePayment(
        student=student["_id"],
        fee_structure=structure["_id"],
        fee_type=payload.fee_type,
        receipt_number=generate_receipt_number(now),
        due_amount=owed,
        paid_amount=payload.amount,
        late_fee=payload.late_fee,
        discount=payload.discount,
        total_amount=payment_total(payload.amount, payload.late_fee, payload.discount),
        payment_method=payload.payment_method,
        transaction_id=payload.transaction_id,
        payment_date=payload.payment_date or now,
        due_date=structure.get("dueDate"),
        month=payload.month,
        year=payload.year,
        status=payment_status(payload.amount, owed, structure.get("dueDate"), now),
        remarks=payload.remarks,
        collected_by=principal.id,
        session=structure.get("session") or student.get("session"),
    ).to_document()
    new_id = create_document(PAYMENTS, doc)
    logger.info(f"Recorded payment {doc['receiptNumber']} of {doc['totalAmount']} for student {student['_id']}")

    created = _populate_payment(payments.find_one({"_id": ObjectId(new_id)}))
    created["remainingAmount"] = remaining_amount(owed, payload.amount)
    return ok({"payment": serialize_doc(created)}, "Fee payment recorded successfully")


@router.get("/payments/{payment_id}/receipt")
def payment_receipt(payment_id: str, principal: Principal = Depends(get_principal)):
    payment = find_by_id(FeePayment, payment_id, "Payment record")
    enforce(principal, "fee_payment", "view", payment)
    _populate_payment(payment)

    student = payment.get("student") if isinstance(payment.get("student"), dict) else {}
    account = student.get("user") if isinstance(student.get("user"), dict) else {}
    classroom = student.get("class") if isinstance(student.get("class"), dict) else {}
    fee_type = payment.get("feeType") if isinstance(payment.get("feeType"), dict) else {}
    collector = payment.get("collectedBy") if isinstance(payment.get("collectedBy"), dict) else {}

    receipt = {
        "receiptNumber": payment["receiptNumber"],
        "paymentDate": payment.get("paymentDate"),
        "student": {
            "name": f"{account.get('firstName', '')} {account.get('lastName', '')}".strip(),
            "admissionNumber": student.get("admissionNumber"),
            "rollNumber": student.get("rollNumber"),
            "class": f"{classroom.get('name')} (Grade {classroom.get('grade')})" if classroom else None,
        },
        "feeDetails": {
            "feeType": fee_type.get("name"),
            "description": fee_type.get("description"),
            "dueAmount": payment.get("dueAmount"),
            "amount": payment.get("paidAmount"),
            "lateFee": payment.get("lateFee", 0),
            "discount": payment.get("discount", 0),
            "totalAmount": payment.get("totalAmount"),
        },
        "paymentDetails": {
            "method": payment.get("paymentMethod"),
            "transactionId": payment.get("transactionId"),
            "status": current_status(payment),
            "collectedBy": f"{collector.get('firstName', '')} {collector.get('lastName', '')}".strip() or None,
            "remarks": payment.get("remarks"),
        },
    }
    return ok({"receipt": receipt})


@router.get("/student/{student_id}/status")
def student_fee_status(student_id: str, session: Optional[str] = Query(None),
                       principal: Principal = Depends(get_principal)):
    student = find_by_id(Student, student_id, "Student")
    enforce(principal, "fee_payment", "view", {"student": student["_id"]})

    filt: Dict[str, Any] = {"class": student.get("class"), "isActive": True}
    session_id = to_object_id(session, "Session") if session else student.get("session")
    if session_id:
        filt["session"] = session_id
    structures = list(get_collection(FeeStructure).find(filt).sort([("dueDate", 1), ("_id", 1)]))
    populate_many(structures, "feeType", FeeType, ("name", "description"))

    payments = list(get_collection(FeePayment).find(
        {"student": student["_id"], "status": {"$ne": "Cancelled"}}).sort([("paymentDate", 1), ("_id", 1)]))
    by_type: Dict[ObjectId, List[Dict[str, Any]]] = {}
    for p in payments:
        by_type.setdefault(p["feeType"], []).append(p)

    now = datetime.utcnow()
    fee_status = []
    summary = {"totalFees": 0, "totalPaid": 0, "totalPending": 0, "totalOverdue": 0, "overdueCount": 0}
    for structure in structures:
        type_id = structure["feeType"]["_id"] if isinstance(structure["feeType"], dict) else structure["feeType"]
        paid_records = by_type.get(type_id, [])
        due = net_amount(structure["amount"], structure.get("discount"))
        paid = sum(p.get("paidAmount", 0) for p in paid_records)
        status = payment_status(paid, due, structure.get("dueDate"), now)
        overdue_days = days_overdue(structure.get("dueDate"), now) if status in ("Overdue", "Partial") else 0
        late_fee = structure.get("lateFee") or {}
        penalty = late_fee.get("amount", 0) if overdue_days > late_fee.get("afterDays", 0) else 0
        last = paid_records[-1] if paid_records else None

        fee_status.append({
            "feeType": structure["feeType"],
            "amount": structure["amount"],
            "netAmount": due,
            "dueDate": structure.get("dueDate"),
            "status": status,
            "isPaid": status == "Paid",
            "isOverdue": overdue_days > 0,
            "daysOverdue": overdue_days,
            "amountPaid": paid,
            "remainingAmount": remaining_amount(due, paid),
            "paymentDate": last.get("paymentDate") if last else None,
            "receiptNumber": last.get("receiptNumber") if last else None,
            "lateFee": penalty,
        })
        summary["totalFees"] += due
        summary["totalPaid"] += sum(p.get("totalAmount", 0) for p in paid_records)
        if status != "Paid":
            outstanding = remaining_amount(due, paid) + penalty
            summary["totalPending"] += outstanding
            if overdue_days > 0:
                summary["totalOverdue"] += outstanding
                summary["overdueCount"] += 1

    populate(student, "class", Classroom, ("name", "grade"))
    populate(student, "user", User, ("firstName", "lastName"))
    return ok({"student": serialize_doc(student), "summary": summary, "feeStatus": fee_status})


@router.get("/stats")
def fee_stats(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    user=Depends(authorize("Admin")),
):
    filt: Dict[str, Any] = {}
    dates = date_filter(None, start_date, end_date)
    if dates:
        filt["paymentDate"] = dates
    payments = list(get_collection(FeePayment).find(
        filt, {"status": 1, "totalAmount": 1, "paymentDate": 1, "paymentMethod": 1,
               "paidAmount": 1, "dueAmount": 1, "dueDate": 1}))
    now = datetime.utcnow()

    by_status: Dict[str, Dict[str, Any]] = {}
    monthly: Dict[tuple, Dict[str, Any]] = {}
    by_method: Dict[str, Dict[str, Any]] = {}
    for p in payments:
        p["status"] = current_status(p, now)
        amount = p.get("totalAmount", 0)
        entry = by_status.setdefault(p.get("status"), {"status": p.get("status"), "count": 0, "totalAmount": 0})
        entry["count"] += 1
        entry["totalAmount"] += amount
        if p.get("status") != "Paid":
            continue
        when = p.get("paymentDate")
        if when:
            month = monthly.setdefault((when.year, when.month),
                                       {"year": when.year, "month": when.month, "count": 0, "totalAmount": 0})
            month["count"] += 1
            month["totalAmount"] += amount
        method = by_method.setdefault(p.get("paymentMethod"),
                                      {"paymentMethod": p.get("paymentMethod"), "count": 0, "totalAmount": 0})
        method["count"] += 1
        method["totalAmount"] += amount

    def _status(name: str, key: str) -> Any:
        return by_status.get(name, {}).get(key, 0)

    summary = {
        "totalCollected": _status("Paid", "totalAmount") + _status("Partial", "totalAmount"),
        "totalPayments": _status("Paid", "count"),
        "partialPayments": _status("Partial", "count"),
        "pendingPayments": _status("Pending", "count"),
        "overduePayments": _status("Overdue", "count"),
    }
    return ok({
        "summary": summary,
        "collectionStats": list(by_status.values()),
        "monthlyCollection": [monthly[k] for k in sorted(monthly)][-12:],
        "paymentMethodStats": list(by_method.values()),
    })

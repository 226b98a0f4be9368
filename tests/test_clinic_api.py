from dental_clinic import config
from dental_clinic.auth_service import register_organization
from dental_clinic.messaging import SendResult

from .conftest import PASSWORD, bearer, login

VARIANTS = [
    {"name": "Front", "price": "100", "tooth_numbers": [11, 12, 13]},
    {"name": "Molars", "price": "120", "tooth_numbers": [16, 17]},
    {"name": "Other", "price": "80", "is_default": True},
]


# =============================================================================
# Helpers
# =============================================================================

def _treatment_type(client, headers, variants=VARIANTS, name="Filling"):
    r = client.post("/api/treatment-types", headers=headers,
                    json={"name": name, "duration_minutes": 30, "price_variants": variants})
    assert r.status_code == 201, r.text
    return r.json()


def _patient(client, headers, first_name="Jane", mobile_number="+1 555 010 0100", **extra):
    r = client.post("/api/patients", headers=headers,
                    json={"first_name": first_name, "last_name": "Doe", "mobile_number": mobile_number, **extra})
    assert r.status_code == 201, r.text
    return r.json()


def _appointment(client, headers, patient_id, type_id, doctor_id, start_at="2030-01-10T09:00:00"):
    r = client.post("/api/appointments", headers=headers, json={
        "patient_id": patient_id, "treatment_type_id": type_id, "doctor_id": doctor_id, "start_at": start_at,
    })
    assert r.status_code == 201, r.text
    return r.json()


def _treatment(client, headers, **body):
    return client.post("/api/treatments", headers=headers, json=body)


def _completed_treatment(client, admin, clinic, doctor_id=None):
    """Patient with a completed 3-tooth treatment: 300.00 total, 10% off, 270.00 due."""
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    app = _appointment(client, admin, p["id"], tt["id"], doctor_id or clinic.dentist_id)
    r = _treatment(client, admin, patient_id=p["id"], treatment_type_id=tt["id"], tooth_numbers=[11, 16, 21],
                   discount_percent="10", status="completed", appointment_id=app["id"])
    assert r.status_code == 201, r.text
    return p, tt, app, r.json()


# =============================================================================
# Patients
# =============================================================================

def test_patient_crud_and_search(client, clinic, admin, secretary):
    p = _patient(client, secretary, email="jane@example.test")
    assert p["full_name"] == "Jane Doe"
    assert p["follow_up_status"] == "pending"

    r = client.post("/api/patients", headers=admin,
                    json={"first_name": "Other", "last_name": "Person", "mobile_number": "+1 555 010 0100"})
    assert r.status_code == 400

    found = client.get("/api/patients", params={"search": "jan"}, headers=secretary).json()
    assert found["total"] == 1
    assert found["data"][0]["id"] == p["id"]

    r = client.patch(f"/api/patients/{p['id']}", headers=secretary, json={"address": "3 Elm Road"})
    assert r.json()["address"] == "3 Elm Road"

    assert client.delete(f"/api/patients/{p['id']}", headers=secretary).status_code == 403
    assert client.delete(f"/api/patients/{p['id']}", headers=admin).status_code == 200
    assert client.get(f"/api/patients/{p['id']}", headers=admin).status_code == 404
    assert client.get("/api/patients", headers=admin).json()["total"] == 0


def test_data_is_isolated_between_clinics(client, clinic, admin):
    p = _patient(client, admin)
    tt = _treatment_type(client, admin)

    register_organization("Rival Clinic", "boss@rival.test", "Rival Boss", PASSWORD)
    rival = bearer(login(client, "boss@rival.test")["access_token"])

    assert client.get(f"/api/patients/{p['id']}", headers=rival).status_code == 404
    assert client.patch(f"/api/patients/{p['id']}", headers=rival, json={"address": "x"}).status_code == 404
    assert client.get("/api/patients", headers=rival).json()["total"] == 0
    assert client.get(f"/api/treatment-types/{tt['id']}", headers=rival).status_code == 404
    assert client.get("/api/messages", headers=rival).json()["total"] == 0

    # same mobile number is fine in another clinic
    _patient(client, rival)


# =============================================================================
# Appointments
# =============================================================================

def test_dentist_sees_only_own_appointments(client, clinic, admin, dentist):
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    mine = _appointment(client, admin, p["id"], tt["id"], clinic.dentist_id, "2030-01-10T09:00:00")
    theirs = _appointment(client, admin, p["id"], tt["id"], clinic.other_dentist_id, "2030-01-10T09:00:00")

    listed = client.get("/api/appointments", headers=dentist).json()
    assert [a["id"] for a in listed] == [mine["id"]]
    assert client.get(f"/api/appointments/{theirs['id']}", headers=dentist).status_code == 404
    assert len(client.get("/api/appointments", headers=admin).json()) == 2

    agenda = client.get("/api/agenda", params={"day": "2030-01-10"}, headers=admin).json()
    assert len(agenda) == 2
    assert client.get("/api/agenda", params={"day": "2030-01-11"}, headers=admin).json() == []


def test_doctor_cannot_be_double_booked(client, clinic, admin):
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    first = _appointment(client, admin, p["id"], tt["id"], clinic.dentist_id, "2030-01-10T09:00:00")
    assert first["end_at"] == "2030-01-10T09:30:00"

    r = client.post("/api/appointments", headers=admin, json={
        "patient_id": p["id"], "treatment_type_id": tt["id"], "doctor_id": clinic.dentist_id,
        "start_at": "2030-01-10T09:15:00",
    })
    assert r.status_code == 400

    # back to back is fine
    _appointment(client, admin, p["id"], tt["id"], clinic.dentist_id, "2030-01-10T09:30:00")

    # a cancelled appointment frees the slot
    r = client.patch(f"/api/appointments/{first['id']}", headers=admin, json={"status": "cancelled"})
    assert r.status_code == 200
    _appointment(client, admin, p["id"], tt["id"], clinic.dentist_id, "2030-01-10T09:00:00")


def test_default_doctor_is_used(client, clinic, admin, secretary):
    client.put("/api/organization/default-doctor", headers=admin, json={"doctor_id": clinic.other_dentist_id})
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    r = client.post("/api/appointments", headers=secretary, json={
        "patient_id": p["id"], "treatment_type_id": tt["id"], "start_at": "2030-02-01T10:00:00",
    })
    assert r.status_code == 201, r.text
    assert r.json()["doctor_id"] == clinic.other_dentist_id


def test_manual_appointment_reminder(client, clinic, admin, whatsapp):
    tt = _treatment_type(client, admin)
    p = _patient(client, admin, send_medical_history=False)
    app = _appointment(client, admin, p["id"], tt["id"], clinic.dentist_id, "2030-03-05T14:30:00")

    r = client.post(f"/api/appointments/{app['id']}/send-reminder", headers=admin)
    assert r.status_code == 200, r.text
    m = r.json()["message"]
    assert m["status"] == "sent"
    assert "2030-03-05" in m["content"]
    assert "14:30" in m["content"]
    assert client.get(f"/api/appointments/{app['id']}", headers=admin).json()["reminder_sent_at"]


# =============================================================================
# Treatments and pricing
# =============================================================================

def test_treatment_total_comes_from_price_variants(client, clinic, admin):
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    r = _treatment(client, admin, patient_id=p["id"], treatment_type_id=tt["id"],
                   tooth_numbers=[21, 16, 11], discount_percent="10")
    assert r.status_code == 201, r.text
    t = r.json()
    assert t["status"] == "planned"
    assert t["total_price"] == "300.00"
    assert t["discount"] == "30.00"
    assert t["amount_due"] == "270.00"
    assert t["tooth_label"] == "11, 16, 21"

    stats = client.get(f"/api/patients/{p['id']}/treatment-stats", headers=admin).json()
    assert stats["count"] == 1
    assert stats["by_status"]["planned"] == 1
    assert stats["amount_due"] == "270.00"


def test_quote_endpoint(client, clinic, admin):
    tt = _treatment_type(client, admin)
    r = client.post(f"/api/treatment-types/{tt['id']}/quote", headers=admin,
                    json={"tooth_numbers": [11, 12, 13, 17], "discount": "20"})
    assert r.status_code == 200, r.text
    q = r.json()
    assert q["total_price"] == "420.00"
    assert q["amount_due"] == "400.00"
    assert q["tooth_label"] == "11-13, 17"


def test_invalid_tooth_selections(client, clinic, admin):
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    for teeth in ([], [11, 11], [99]):
        r = _treatment(client, admin, patient_id=p["id"], treatment_type_id=tt["id"], tooth_numbers=teeth)
        assert r.status_code == 400, teeth


def test_invalid_price_variants(client, clinic, admin):
    r = client.post("/api/treatment-types", headers=admin, json={"name": "Bad", "price_variants": [
        {"name": "A", "price": "10", "is_default": True},
        {"name": "B", "price": "20", "is_default": True},
    ]})
    assert r.status_code == 400
    r = client.post("/api/treatment-types", headers=admin, json={"name": "Bad", "price_variants": [
        {"name": "A", "price": "10", "tooth_numbers": [99]},
    ]})
    assert r.status_code == 400


def test_tooth_without_price_rule(client, clinic, admin):
    tt = _treatment_type(client, admin, variants=[{"name": "Front", "price": "100", "tooth_numbers": [11]}])
    p = _patient(client, admin)

    r = _treatment(client, admin, patient_id=p["id"], treatment_type_id=tt["id"], tooth_numbers=[11, 21])
    assert r.status_code == 422
    assert "21" in r.json()["detail"]

    # the preview prices the unknown tooth at zero
    q = client.post(f"/api/treatment-types/{tt['id']}/quote", headers=admin, json={"tooth_numbers": [11, 21]}).json()
    assert q["total_price"] == "100.00"


def test_free_treatment_type_is_recordable(client, clinic, admin):
    tt = _treatment_type(client, admin, variants=[{"name": "Checkup", "price": "0"}], name="Checkup")
    p = _patient(client, admin)
    r = _treatment(client, admin, patient_id=p["id"], treatment_type_id=tt["id"], tooth_numbers=[11])
    assert r.status_code == 201, r.text
    assert r.json()["total_price"] == "0.00"
    assert r.json()["amount_due"] == "0.00"


def test_discount_above_hundred_percent_is_clamped(client, clinic, admin):
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    r = _treatment(client, admin, patient_id=p["id"], treatment_type_id=tt["id"], tooth_numbers=[11],
                   discount_percent="150")
    assert r.status_code == 201, r.text
    assert r.json()["discount"] == "100.00"
    assert r.json()["amount_due"] == "0.00"

    r = client.post("/api/treatments/bulk-discount", headers=admin,
                    json={"patient_id": p["id"], "treatment_ids": [r.json()["id"]], "discount_percent": "120"})
    assert r.status_code == 200, r.text
    assert r.json()[0]["amount_due"] == "0.00"


def test_only_planned_treatments_without_appointment(client, clinic, admin):
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    r = _treatment(client, admin, patient_id=p["id"], treatment_type_id=tt["id"], tooth_numbers=[11],
                   status="completed")
    assert r.status_code == 400


def test_completed_treatment_is_locked(client, clinic, admin):
    _, _, _, t = _completed_treatment(client, admin, clinic)
    r = client.patch(f"/api/treatments/{t['id']}", headers=admin, json={"notes": "changed"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Completed treatments cannot be modified."
    assert client.delete(f"/api/treatments/{t['id']}", headers=admin).status_code == 400


def test_completion_credits_doctor_commission(client, clinic, admin):
    _completed_treatment(client, admin, clinic)
    doctor = client.get(f"/api/users/{clinic.dentist_id}", headers=admin).json()
    # 30% of 270.00
    assert doctor["wallet"] == "81.00"


def test_completing_a_planned_treatment(client, clinic, admin):
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    app = _appointment(client, admin, p["id"], tt["id"], clinic.other_dentist_id)
    t = _treatment(client, admin, patient_id=p["id"], treatment_type_id=tt["id"], tooth_numbers=[11, 16, 21],
                   discount_percent="10").json()

    r = client.patch(f"/api/treatments/{t['id']}", headers=admin,
                     json={"status": "completed", "appointment_id": app["id"]})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "completed"
    assert r.json()["doctor_id"] == clinic.other_dentist_id
    # 20% of 270.00
    assert client.get(f"/api/users/{clinic.other_dentist_id}", headers=admin).json()["wallet"] == "54.00"


def test_dentist_sees_only_own_treatments(client, clinic, admin, dentist, other_dentist):
    _, _, _, t = _completed_treatment(client, admin, clinic)
    assert [x["id"] for x in client.get("/api/treatments", headers=dentist).json()] == [t["id"]]
    assert client.get("/api/treatments", headers=other_dentist).json() == []
    assert client.get(f"/api/treatments/{t['id']}", headers=other_dentist).status_code == 404


def test_bulk_discount(client, clinic, admin):
    tt = _treatment_type(client, admin)
    p = _patient(client, admin)
    ids = [
        _treatment(client, admin, patient_id=p["id"], treatment_type_id=tt["id"], tooth_numbers=teeth).json()["id"]
        for teeth in ([11], [16, 17])
    ]
    r = client.post("/api/treatments/bulk-discount", headers=admin,
                    json={"patient_id": p["id"], "treatment_ids": ids, "discount_percent": "50"})
    assert r.status_code == 200, r.text
    assert [t["amount_due"] for t in r.json()] == ["50.00", "120.00"]


# =============================================================================
# Payments, expenses, dashboard
# =============================================================================

def test_payment_sends_receipt_with_balance(client, clinic, admin, whatsapp):
    p, _, _, _ = _completed_treatment(client, admin, clinic)
    r = client.post("/api/payments", headers=admin,
                    json={"patient_id": p["id"], "amount": "100", "payment_method": "cash"})
    assert r.status_code == 201, r.text
    payment = r.json()
    assert payment["amount"] == "100.00"
    receipt = payment["receipt"]
    assert receipt["type"] == "payment_receipt"
    assert receipt["status"] == "sent"
    assert "100.00" in receipt["content"]
    assert "170.00" in receipt["content"]
    assert receipt["metadata"]["paymentId"] == payment["id"]

    balance = client.get(f"/api/patients/{p['id']}/balance", headers=admin).json()
    assert balance == {"total_billed": "270.00", "total_paid": "100.00", "balance": "170.00"}


def test_payment_survives_failed_receipt(client, clinic, admin, whatsapp):
    p, _, _, _ = _completed_treatment(client, admin, clinic)
    whatsapp.return_value = SendResult(False, "SMTP timeout")
    r = client.post("/api/payments", headers=admin,
                    json={"patient_id": p["id"], "amount": "50", "payment_method": "card"})
    assert r.status_code == 201, r.text
    receipt = r.json()["receipt"]
    assert receipt["status"] == "failed"
    assert receipt["error"] == "SMTP timeout"
    assert len(client.get("/api/payments", params={"patient_id": p["id"]}, headers=admin).json()) == 1

    whatsapp.return_value = SendResult(True)
    r = client.post(f"/api/messages/{receipt['id']}/resend", headers=admin)
    assert r.json()["status"] == "sent"
    assert client.post(f"/api/messages/{receipt['id']}/resend", headers=admin).status_code == 400


def test_disabled_receipts(client, clinic, admin, whatsapp):
    p = _patient(client, admin, send_medical_history=False)
    r = client.put("/api/notification-settings", headers=admin, json={"notification_toggles": {"payment_receipt": False}})
    assert r.status_code == 200, r.text
    r = client.post("/api/payments", headers=admin,
                    json={"patient_id": p["id"], "amount": "10", "payment_method": "cash"})
    assert r.status_code == 201
    assert r.json()["receipt"] is None
    whatsapp.assert_not_called()


def test_overdue_reminder(client, clinic, admin):
    p, _, _, _ = _completed_treatment(client, admin, clinic)
    r = client.post(f"/api/patients/{p['id']}/overdue-reminder", headers=admin)
    assert r.status_code == 200, r.text
    assert "270.00" in r.json()["message"]["content"]

    other = _patient(client, admin, first_name="Paid", mobile_number="+1 555 999 0000")
    assert client.post(f"/api/patients/{other['id']}/overdue-reminder", headers=admin).status_code == 400


def test_pay_doctor_from_wallet(client, clinic, admin, secretary):
    _completed_treatment(client, admin, clinic)
    body = {"doctor_id": clinic.dentist_id, "amount": "100"}
    assert client.post("/api/expenses/doctor-payment", headers=admin, json=body).status_code == 400
    assert client.post("/api/expenses/doctor-payment", headers=secretary, json=body).status_code == 403

    r = client.post("/api/expenses/doctor-payment", headers=admin, json={**body, "amount": "50"})
    assert r.status_code == 201, r.text
    assert r.json()["wallet"] == "31.00"
    assert r.json()["expense_type"] == "doctor_payment"

    listed = client.get("/api/expenses", params={"expense_type": "doctor_payment"}, headers=admin).json()
    assert [e["id"] for e in listed] == [r.json()["id"]]

    # deleting the payment gives the money back
    assert client.delete(f"/api/expenses/{r.json()['id']}", headers=admin).status_code == 200
    assert client.get(f"/api/users/{clinic.dentist_id}", headers=admin).json()["wallet"] == "81.00"


def test_plain_expenses(client, clinic, admin, secretary):
    r = client.post("/api/expenses", headers=secretary, json={"name": "Gloves", "amount": "25.5", "expense_type": "lab"})
    assert r.status_code == 201, r.text
    assert r.json()["amount"] == "25.50"
    r = client.post("/api/expenses", headers=admin,
                    json={"name": "Sneaky", "amount": "10", "expense_type": "doctor_payment"})
    assert r.status_code == 400


def test_dashboard_by_role(client, clinic, admin, dentist, secretary):
    p, _, _, _ = _completed_treatment(client, admin, clinic)
    client.post("/api/payments", headers=admin, json={"patient_id": p["id"], "amount": "100", "payment_method": "cash"})
    client.post("/api/expenses", headers=admin, json={"name": "Rent", "amount": "30", "expense_type": "rent"})

    full = client.get("/api/dashboard", headers=admin).json()
    assert full["total_patients"] == 1
    assert full["daily_revenue"] == "100.00"
    assert full["daily_expenses"] == "30.00"
    assert full["daily_net_income"] == "70.00"
    assert full["pending_payments"] == "170.00"

    desk = client.get("/api/dashboard", headers=secretary).json()
    assert desk["daily_revenue"] == "0.00"
    assert desk["pending_payments"] == "0.00"

    own = client.get("/api/dashboard", headers=dentist).json()
    assert own["daily_revenue"] == "270.00"


# =============================================================================
# Medical history
# =============================================================================

def _form_token(client, headers, patient_id):
    messages = client.get(f"/api/patients/{patient_id}/messages", headers=headers).json()["data"]
    link = messages[0]["metadata"]["medicalHistoryLink"]
    return link.split("token=", 1)[1]


def test_public_medical_history_form(client, clinic, admin):
    q = client.post("/api/medical-history-questions", headers=admin, json={
        "question": "Any allergies?", "type": "radio_with_text", "options": ["No", "Yes"],
        "text_trigger_option": "Yes", "text_field_label": "Which ones?", "required": True,
    })
    assert q.status_code == 201, q.text
    qid = q.json()["id"]

    p = _patient(client, admin)
    token = _form_token(client, admin, p["id"])

    form = client.get("/api/public/medical-history", params={"token": token}).json()
    assert form["patient_first_name"] == "Jane"
    assert [x["id"] for x in form["questions"]] == [qid]
    assert form["already_submitted"] is False

    r = client.post("/api/public/medical-history", json={"token": token, "answers": {"other": "x"}})
    assert r.status_code == 400
    r = client.post("/api/public/medical-history", json={"token": token, "answers": {qid: "Yes: penicillin"}})
    assert r.status_code == 200, r.text

    history = client.get(f"/api/patients/{p['id']}/medical-history", headers=admin).json()
    assert history["medical_history"][qid] == "Yes: penicillin"

    r = client.get("/api/public/medical-history", params={"token": "forged"})
    assert r.status_code == 401


def test_staff_edits_are_audited(client, clinic, admin, secretary):
    p = _patient(client, admin)
    r = client.put(f"/api/patients/{p['id']}/medical-history", headers=secretary,
                   json={"data": {"smoker": "no"}, "notes": "first visit"})
    assert r.status_code == 200, r.text
    r = client.put(f"/api/patients/{p['id']}/medical-history", headers=secretary, json={"data": {"smoker": "yes"}})
    assert r.json()["changes"] == {"smoker": {"from": "no", "to": "yes"}}

    # unchanged data leaves no audit row
    client.put(f"/api/patients/{p['id']}/medical-history", headers=secretary, json={"data": {"smoker": "yes"}})

    audits = client.get(f"/api/patients/{p['id']}/medical-history/audits", headers=admin).json()
    assert len(audits) == 2
    assert {a["edited_by"] for a in audits} == {clinic.secretary_id}
    assert {a["notes"] for a in audits} == {"first visit", None}


# =============================================================================
# Attachments
# =============================================================================

def test_attachment_upload_and_download(client, clinic, admin, monkeypatch, tmp_path):
    monkeypatch.setattr(config, "UPLOAD_DIR", tmp_path)
    p = _patient(client, admin)
    r = client.post("/api/attachments", headers=admin, data={"patient_id": p["id"]},
                    files={"file": ("../../xray.png", b"\x89PNG-data", "image/png")})
    assert r.status_code == 201, r.text
    a = r.json()
    assert a["file_name"] == "xray.png"
    assert a["size"] == 9
    assert list((tmp_path / clinic.org_id).iterdir())

    r = client.get(f"/api/attachments/{a['id']}", headers=admin)
    assert r.status_code == 200
    assert r.content == b"\x89PNG-data"

    assert client.delete(f"/api/attachments/{a['id']}", headers=admin).status_code == 200
    assert client.get(f"/api/attachments/{a['id']}", headers=admin).status_code == 404

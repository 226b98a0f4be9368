from __future__ import annotations

import base64
import binascii
import json
import os
from datetime import date, datetime, timezone

import requests
import streamlit as st

st.set_page_config(page_title="Dental Clinic", layout="wide")

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")

SESSION_EXPIRED = "Session not valid. Press Logout and log in again."


# JWT helpers (UI only, no signature check)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    try:
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


def jwt_is_expired(token: str) -> bool:
    exp = jwt_payload(token).get("exp")
    if not isinstance(exp, int):
        return False
    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (exp - 5)


# HTTP client (with JWT)

def _headers(token: str | None) -> dict:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _check(r: requests.Response) -> None:
    if r.status_code == 401:
        raise PermissionError("401 Unauthorized (invalid or expired token).")
    if r.status_code >= 400:
        try:
            detail = r.json().get("detail")
        except ValueError:
            detail = r.text
        raise requests.HTTPError(f"{r.status_code}: {detail}", response=r)


def api_get(path: str, token: str | None = None, params: dict | None = None) -> dict | list:
    r = requests.get(f"{API_BASE}{path}", headers=_headers(token), params=params, timeout=10)
    _check(r)
    return r.json()


def api_post(path: str, payload: dict | None = None, token: str | None = None) -> dict | list:
    r = requests.post(f"{API_BASE}{path}", headers=_headers(token), json=payload or {}, timeout=15)
    _check(r)
    return r.json()


def api_login(email: str, password: str) -> dict:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded
    r = requests.post(f"{API_BASE}/api/auth/login", data={"username": email, "password": password}, timeout=10)
    _check(r)
    return r.json()


def is_logged_in() -> bool:
    token = st.session_state.get("token")
    return bool(token) and isinstance(token, str)


def do_logout() -> None:
    token = st.session_state.get("token")
    if token:
        try:
            api_post("/api/auth/logout", token=token)
        except (PermissionError, requests.RequestException):
            pass  # server unreachable: local logout only
    for key in ("token", "user", "org", "pending_login", "auth_error"):
        st.session_state.pop(key, None)
    st.rerun()


def require_auth() -> str | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Restricted section. Log in from the sidebar.")
        return None
    if jwt_is_expired(token):
        st.error("Session expired. Press Logout and log in again.")
        return None
    return token


def show_error(e: Exception) -> None:
    if isinstance(e, PermissionError):
        st.session_state["auth_error"] = str(e)
        st.error(SESSION_EXPIRED)
    else:
        st.error(str(e))


def money(value: str | float | None) -> str:
    return f"{float(value or 0):,.2f}"


# Public medical history form (link sent by WhatsApp: ?token=...)

form_token = st.query_params.get("token")
if form_token:
    st.title("Medical history")
    try:
        form = api_get("/api/public/medical-history", params={"token": form_token})
    except (PermissionError, requests.RequestException):
        st.error("This link is not valid or has expired. Please contact the clinic.")
        st.stop()

    st.write(f"Hello **{form['patient_first_name']}**, please answer the questions below.")
    if form["already_submitted"]:
        st.info("We already have your answers: submitting again replaces them.")

    answers: dict = {}
    for q in form["questions"]:
        label = q["question"] + (" *" if q["required"] else "")
        key = f"mh_{q['id']}"
        if q["type"] == "text":
            answers[q["id"]] = st.text_input(label, key=key)
        elif q["type"] == "textarea":
            answers[q["id"]] = st.text_area(label, key=key)
        elif q["type"] == "checkbox":
            answers[q["id"]] = st.multiselect(label, q["options"], key=key)
        else:
            choice = st.radio(label, q["options"], index=None, key=key)
            answers[q["id"]] = choice
            if q["type"] == "radio_with_text" and choice == q["text_trigger_option"]:
                answers[f"{q['id']}_details"] = st.text_input(q["text_field_label"] or "Details", key=f"{key}_t")

    if st.button("Submit", key="mh_submit"):
        try:
            api_post("/api/public/medical-history", {"token": form_token, "answers": answers})
            st.success("Thank you, your medical history was sent to the clinic.")
        except (PermissionError, requests.RequestException) as e:
            st.error(str(e))
    st.stop()


# Sidebar login (with organization selection)

with st.sidebar:
    st.header("Access")

    pending = st.session_state.get("pending_login")

    if is_logged_in():
        user = st.session_state.get("user") or {}
        org = st.session_state.get("org") or {}
        st.write(f"User: **{user.get('name', '-')}**")
        st.write(f"Clinic: **{org.get('org_name', '-')}** ({org.get('role', '-')})")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Logout", key="logout_btn"):
            do_logout()

    elif pending:
        st.write("Select the clinic:")
        chosen = st.selectbox(
            "Clinic",
            options=pending["organizations"],
            format_func=lambda o: f"{o['org_name']} ({o['role']})",
            key="login_org",
        )
        if st.button("Continue", key="select_org_btn"):
            try:
                res = api_post("/api/auth/select-organization", {"org_id": chosen["org_id"]}, token=pending["access_token"])
                st.session_state.update(token=res["access_token"], user=res["user"], org=res["current_org"])
                st.session_state.pop("pending_login", None)
                st.rerun()
            except (PermissionError, requests.RequestException) as e:
                st.error(str(e))
        if st.button("Back", key="select_org_back"):
            st.session_state.pop("pending_login", None)
            st.rerun()

    else:
        email = st.text_input("Email", key="login_user")
        password = st.text_input("Password", type="password", key="login_pass")

        if st.button("Login", key="login_btn"):
            try:
                res = api_login(email.strip().lower(), password)
                if res["needs_org_selection"]:
                    st.session_state["pending_login"] = res
                else:
                    st.session_state.update(token=res["access_token"], user=res["user"], org=res["current_org"])
                st.session_state.pop("auth_error", None)
                st.rerun()
            except PermissionError:
                st.error("Invalid credentials.")
            except requests.RequestException as e:
                st.error(str(e))

    st.divider()
    st.caption(f"API: {API_BASE}")


# UI

st.title("Dental Clinic")

token = require_auth()
if not token:
    st.stop()

tab_dash, tab_pat, tab_app, tab_tr, tab_pay, tab_msg = st.tabs(
    ["Dashboard", "Patients", "Appointments", "Treatments", "Payments", "Messages"]
)


@st.cache_data(ttl=10)
def load_patients(token: str, search: str = "") -> list[dict]:
    return api_get("/api/patients", token=token, params={"search": search or None, "limit": 200})["data"]


@st.cache_data(ttl=30)
def load_treatment_types(token: str) -> list[dict]:
    return api_get("/api/treatment-types", token=token)


@st.cache_data(ttl=30)
def load_dentists(token: str) -> list[dict]:
    return api_get("/api/users", token=token, params={"role": "dentist"})


@st.cache_data(ttl=3600)
def load_teeth() -> list[dict]:
    return api_get("/api/teeth")


def patient_picker(key: str) -> dict | None:
    try:
        patients = load_patients(token)
    except (PermissionError, requests.RequestException) as e:
        show_error(e)
        return None
    if not patients:
        st.info("No patients yet.")
        return None
    return st.selectbox(
        "Patient",
        options=patients,
        format_func=lambda p: f"{p['last_name']} {p['first_name']} | {p['mobile_number']}",
        key=key,
    )


# TAB - Dashboard

with tab_dash:
    day = st.date_input("Day", value=date.today(), key="dash_day")
    try:
        d = api_get("/api/dashboard", token=token, params={"day": day.isoformat()})
        c1, c2, c3, c4 = st.columns(4)
        c1.metric("Appointments", d["todays_appointments"])
        c2.metric("Patients", d["total_patients"])
        c3.metric("Pending payments", money(d["pending_payments"]))
        c4.metric("Net income", money(d["daily_net_income"]), help=f"Revenue {money(d['daily_revenue'])} - "
                                                                     f"expenses {money(d['daily_expenses'])}")
    except (PermissionError, requests.RequestException) as e:
        show_error(e)


# TAB - Patients

with tab_pat:
    with st.expander("New patient"):
        c1, c2 = st.columns(2)
        first_name = c1.text_input("First name", key="pat_first")
        last_name = c2.text_input("Last name", key="pat_last")
        mobile = c1.text_input("Mobile number", key="pat_mobile")
        email = c2.text_input("Email (optional)", key="pat_email")
        send_mh = st.checkbox("Send the medical history form by WhatsApp", value=True, key="pat_send_mh")

        if st.button("Create patient", key="pat_submit"):
            if not first_name.strip() or not last_name.strip() or not mobile.strip():
                st.error("First name, last name and mobile number are required.")
            else:
                try:
                    res = api_post("/api/patients", {
                        "first_name": first_name.strip(),
                        "last_name": last_name.strip(),
                        "mobile_number": mobile.strip(),
                        "email": email.strip() or None,
                        "send_medical_history": send_mh,
                    }, token=token)
                    load_patients.clear()
                    st.success(f"Patient created: {res['full_name']}")
                except (PermissionError, requests.RequestException) as e:
                    show_error(e)

    search = st.text_input("Search", key="pat_search")
    try:
        for p in load_patients(token, search.strip()):
            mh = "yes" if p["has_medical_history"] else "no"
            st.write(f"- **{p['last_name']} {p['first_name']}** | {p['mobile_number']} | "
                     f"{p.get('email') or '-'} | medical history: {mh}")
    except (PermissionError, requests.RequestException) as e:
        show_error(e)


# TAB - Appointments

with tab_app:
    st.subheader("Book an appointment")
    patient = patient_picker("app_patient")
    try:
        types = load_treatment_types(token)
        dentists = load_dentists(token)
    except (PermissionError, requests.RequestException) as e:
        show_error(e)
        types, dentists = [], []

    if patient and types:
        c1, c2, c3 = st.columns(3)
        ttype = c1.selectbox("Treatment", types, format_func=lambda t: f"{t['name']} ({t['duration_minutes']} min)",
                             key="app_type")
        doctor = c1.selectbox("Dentist", [None] + dentists,
                              format_func=lambda m: "Clinic default" if m is None else m["name"], key="app_doctor")
        app_day = c2.date_input("Date", value=date.today(), key="app_day")
        app_time = c2.time_input("Time", value=datetime.now().time().replace(second=0, microsecond=0), key="app_time")
        notes = c3.text_area("Notes (optional)", height=100, key="app_notes")

        if st.button("Book", key="app_submit"):
            try:
                res = api_post("/api/appointments", {
                    "patient_id": patient["id"],
                    "treatment_type_id": ttype["id"],
                    "doctor_id": doctor["user_id"] if doctor else None,
                    "start_at": datetime.combine(app_day, app_time).isoformat(),
                    "notes": notes or None,
                }, token=token)
                st.success(f"Appointment booked: {res['start_at']} - {res['end_at']}")
            except (PermissionError, requests.RequestException) as e:
                show_error(e)

    st.divider()
    agenda_day = st.date_input("Agenda of", value=date.today(), key="agenda_day")
    try:
        items = api_get("/api/agenda", token=token, params={"day": agenda_day.isoformat()})
        if not items:
            st.info("No appointments on this day.")
        for a in items:
            st.write(f"- **{a['start_at'][11:16]} - {a['end_at'][11:16]}** | {a['patient_name']} | "
                     f"{a['treatment_type_name']} | {a['status']} | {a['notes'] or '-'}")
    except (PermissionError, requests.RequestException) as e:
        show_error(e)


# TAB - Treatments

with tab_tr:
    patient = patient_picker("tr_patient")
    try:
        types = load_treatment_types(token)
    except (PermissionError, requests.RequestException) as e:
        show_error(e)
        types = []

    if patient and types:
        with st.expander("New treatment"):
            ttype = st.selectbox("Treatment", types, format_func=lambda t: t["name"], key="tr_type")
            teeth = st.multiselect("Teeth", load_teeth(), format_func=lambda t: t["label"], key="tr_teeth")
            c1, c2 = st.columns(2)
            discount_mode = c1.radio("Discount", ["None", "Amount", "Percent"], horizontal=True, key="tr_dmode")
            discount_value = c2.number_input("Value", min_value=0.0, step=1.0, key="tr_dvalue")

            body = {"tooth_numbers": [t["value"] for t in teeth]}
            if discount_mode == "Amount":
                body["discount"] = discount_value
            elif discount_mode == "Percent":
                body["discount_percent"] = discount_value

            if teeth:
                try:
                    q = api_post(f"/api/treatment-types/{ttype['id']}/quote", body, token=token)
                    st.write(f"Teeth **{q['tooth_label']}** | total {money(q['total_price'])} | "
                             f"discount {money(q['discount'])} ({q['discount_percent']}%) | "
                             f"due **{money(q['amount_due'])}**")
                except (PermissionError, requests.RequestException) as e:
                    show_error(e)

            if st.button("Save as planned", key="tr_submit", disabled=not teeth):
                try:
                    api_post("/api/treatments", {
                        "patient_id": patient["id"],
                        "treatment_type_id": ttype["id"],
                        **body,
                    }, token=token)
                    st.success("Treatment saved.")
                except (PermissionError, requests.RequestException) as e:
                    show_error(e)

        try:
            for t in api_get("/api/treatments", token=token, params={"patient_id": patient["id"]}):
                st.write(f"- {t['date'][:10]} | **{t['treatment_type_name']}** | teeth {t['tooth_label']} | "
                         f"{t['status']} | due {money(t['amount_due'])}")
        except (PermissionError, requests.RequestException) as e:
            show_error(e)


# TAB - Payments

with tab_pay:
    patient = patient_picker("pay_patient")
    if patient:
        try:
            bal = api_get(f"/api/patients/{patient['id']}/balance", token=token)
            c1, c2, c3 = st.columns(3)
            c1.metric("Billed", money(bal["total_billed"]))
            c2.metric("Paid", money(bal["total_paid"]))
            c3.metric("Balance", money(bal["balance"]))
        except (PermissionError, requests.RequestException) as e:
            show_error(e)

        c1, c2 = st.columns(2)
        amount = c1.number_input("Amount", min_value=0.0, step=10.0, key="pay_amount")
        method = c2.selectbox("Method", ["cash", "card", "transfer", "check", "other"], key="pay_method")
        if st.button("Record payment", key="pay_submit", disabled=amount <= 0):
            try:
                res = api_post("/api/payments", {
                    "patient_id": patient["id"],
                    "amount": amount,
                    "payment_method": method,
                }, token=token)
                receipt = res.get("receipt")
                st.success("Payment recorded.")
                if receipt and receipt["status"] == "failed":
                    st.warning(f"Receipt not delivered: {receipt['error']}")
            except (PermissionError, requests.RequestException) as e:
                show_error(e)

        try:
            for p in api_get("/api/payments", token=token, params={"patient_id": patient["id"]}):
                st.write(f"- {p['date']} | {money(p['amount'])} | {p['payment_method']} | {p['notes'] or '-'}")
        except (PermissionError, requests.RequestException) as e:
            show_error(e)


# TAB - Messages

with tab_msg:
    status_filter = st.selectbox("Status", ["", "pending", "sent", "failed"], format_func=lambda s: s or "all",
                                 key="msg_status")
    try:
        page = api_get("/api/messages", token=token, params={"status": status_filter or None, "limit": 100})
        if not page["data"]:
            st.info("No messages.")
        for m in page["data"]:
            c1, c2 = st.columns([5, 1])
            c1.write(f"**{m['type']}** | {m['patient_name']} | {m['status']} | {m['created_at'][:16]}"
                     + (f" | error: {m['error']}" if m["error"] else ""))
            c1.caption(m["content"])
            if m["status"] == "failed" and c2.button("Resend", key=f"resend_{m['id']}"):
                try:
                    r = api_post(f"/api/messages/{m['id']}/resend", token=token)
                    if r["status"] == "sent":
                        st.success("Sent.")
                    else:
                        st.error(f"Still failing: {r['error']}")
                except (PermissionError, requests.RequestException) as e:
                    show_error(e)
    except (PermissionError, requests.RequestException) as e:
        show_error(e)

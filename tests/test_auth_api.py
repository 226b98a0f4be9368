from dental_clinic.auth_models import UserRole
from dental_clinic.auth_service import add_member, register_organization

from .conftest import PASSWORD, bearer, login


# =============================================================================
# Registration and login
# =============================================================================

def test_register_organization_and_login(client):
    r = client.post("/api/auth/register-organization", json={
        "org_name": "Bright Smiles",
        "name": "Rita Owner",
        "email": "Rita@Bright.test",
        "password": PASSWORD,
    })
    assert r.status_code == 201, r.text
    org_id = r.json()["org_id"]

    out = login(client, "rita@bright.test")
    assert out["needs_org_selection"] is False
    assert out["current_org"] == {"org_id": org_id, "org_name": "Bright Smiles", "role": "admin", "status": "active"}
    assert out["refresh_token"]

    me = client.get("/api/me", headers=bearer(out["access_token"])).json()
    assert me["email"] == "rita@bright.test"
    assert me["role"] == "admin"
    assert "delete_patient" in me["permissions"]

    # default catalog seeded with the organization
    types = client.get("/api/treatment-types", headers=bearer(out["access_token"])).json()
    assert types


def test_register_rejects_short_password(client):
    r = client.post("/api/auth/register-organization", json={
        "org_name": "Tiny", "name": "T", "email": "t@tiny.test", "password": "123",
    })
    assert r.status_code == 400


def test_wrong_password(client, clinic):
    r = client.post("/api/auth/login", data={"username": "admin@smile.test", "password": "nope-nope"})
    assert r.status_code == 401


def test_missing_or_garbage_token(client, clinic):
    assert client.get("/api/me").status_code == 401
    assert client.get("/api/me", headers=bearer("not-a-jwt")).status_code == 401


def test_user_with_two_organizations_selects_one(client, clinic):
    second_org, _ = register_organization("Second Clinic", "admin@smile.test", "Ada Admin", PASSWORD)

    out = login(client, "admin@smile.test")
    assert out["needs_org_selection"] is True
    assert out["refresh_token"] is None
    assert {o["org_name"] for o in out["organizations"]} == {"Smile Clinic", "Second Clinic"}

    # the intermediate token is not an access token
    assert client.get("/api/me", headers=bearer(out["access_token"])).status_code == 401

    r = client.post("/api/auth/select-organization", json={"org_id": second_org},
                    headers=bearer(out["access_token"]))
    assert r.status_code == 200, r.text
    selected = r.json()
    assert selected["current_org"]["org_id"] == second_org

    me = client.get("/api/me", headers=bearer(selected["access_token"])).json()
    assert me["org_id"] == second_org

    # switching back with a full token
    r = client.post("/api/auth/select-organization", json={"org_id": clinic.org_id},
                    headers=bearer(selected["access_token"]))
    assert r.json()["current_org"]["org_name"] == "Smile Clinic"


def test_select_unknown_organization(client, clinic):
    register_organization("Second Clinic", "admin@smile.test", "Ada Admin", PASSWORD)
    token = login(client, "admin@smile.test")["access_token"]
    r = client.post("/api/auth/select-organization", json={"org_id": "missing"}, headers=bearer(token))
    assert r.status_code == 400


def test_refresh_and_logout(client, clinic):
    out = login(client, "desk@smile.test")
    r = client.post("/api/auth/refresh", json={"refresh_token": out["refresh_token"]})
    assert r.status_code == 200, r.text
    access = r.json()["access_token"]
    assert client.get("/api/me", headers=bearer(access)).json()["role"] == "secretary"

    # an access token is not a refresh token
    assert client.post("/api/auth/refresh", json={"refresh_token": access}).status_code == 401

    assert client.post("/api/auth/logout", headers=bearer(access)).status_code == 200
    assert client.post("/api/auth/refresh", json={"refresh_token": out["refresh_token"]}).status_code == 401


def test_deactivated_member_loses_access(client, clinic, admin):
    token = login(client, "desk@smile.test")["access_token"]
    assert client.delete(f"/api/users/{clinic.secretary_id}", headers=admin).status_code == 200
    assert client.get("/api/me", headers=bearer(token)).status_code == 401
    r = client.post("/api/auth/login", data={"username": "desk@smile.test", "password": PASSWORD})
    assert r.status_code == 401


def test_update_profile_password(client, clinic, secretary):
    r = client.patch("/api/me", headers=secretary, json={"current_password": "wrong-pass", "new_password": "n3w-password"})
    assert r.status_code == 400
    r = client.patch("/api/me", headers=secretary, json={"current_password": PASSWORD, "new_password": "n3w-password"})
    assert r.status_code == 200, r.text
    login(client, "desk@smile.test", "n3w-password")


# =============================================================================
# Members and permissions
# =============================================================================

def test_admin_manages_members(client, clinic, admin):
    r = client.post("/api/users", headers=admin, json={
        "email": "new@smile.test", "name": "Nina New", "role": "dentist", "password": PASSWORD, "percentage": 25,
    })
    assert r.status_code == 201, r.text
    assert r.json()["percentage"] == 25
    assert r.json()["wallet"] == "0.00"

    dentists = client.get("/api/users", params={"role": "dentist"}, headers=admin).json()
    assert {d["email"] for d in dentists} == {"dentist@smile.test", "other@smile.test", "new@smile.test"}

    r = client.patch(f"/api/users/{r.json()['user_id']}", headers=admin, json={"percentage": 40})
    assert r.json()["percentage"] == 40


def test_secretary_can_list_dentists_only(client, clinic, secretary):
    r = client.get("/api/users", params={"role": "dentist"}, headers=secretary)
    assert r.status_code == 200
    assert len(r.json()) == 2
    assert client.get("/api/users", headers=secretary).status_code == 403
    r = client.post("/api/users", headers=secretary, json={"email": "x@smile.test", "name": "X", "role": "admin",
                                                          "password": PASSWORD})
    assert r.status_code == 403


def test_existing_account_joins_another_clinic(clinic):
    other_org, _ = register_organization("Other Clinic", "boss@other.test", "Boss", PASSWORD)
    member = add_member(other_org, "dentist@smile.test", "Dan Dentist", UserRole.DENTIST, percentage=10)
    assert member["user_id"] == clinic.dentist_id
    assert member["percentage"] == 10


def test_dentist_permissions(client, clinic, dentist):
    me = client.get("/api/me", headers=dentist).json()
    assert "view_own_appointments" in me["permissions"]
    assert "create_patient" not in me["permissions"]
    r = client.post("/api/patients", headers=dentist, json={"first_name": "A", "last_name": "B", "mobile_number": "1"})
    assert r.status_code == 403


def test_organization_settings(client, clinic, admin, secretary):
    r = client.patch("/api/organization", headers=admin, json={"location": "2 High Street"})
    assert r.status_code == 200
    assert client.get("/api/organization", headers=secretary).json()["location"] == "2 High Street"
    assert client.patch("/api/organization", headers=secretary, json={"name": "Mine"}).status_code == 403

    r = client.put("/api/organization/default-doctor", headers=admin, json={"doctor_id": clinic.secretary_id})
    assert r.status_code == 400
    r = client.put("/api/organization/default-doctor", headers=admin, json={"doctor_id": clinic.dentist_id})
    assert r.status_code == 200

from bson import ObjectId


def test_list_users_hides_secrets(client, doctor, patient_user):
    res = client.get("/api/users", headers=doctor["headers"])
    assert res.status_code == 200
    users = res.json()
    assert {u["email"] for u in users} == {doctor["email"], patient_user["email"]}
    assert all("password_hash" not in u for u in users)


def test_list_users_forbidden_for_users(client, patient_user):
    assert client.get("/api/users", headers=patient_user["headers"]).status_code == 403


def test_admin_changes_role(client, db, admin, patient_user):
    res = client.put(f"/api/users/{patient_user['id']}/role", headers=admin["headers"], json={"role": "doctor"})
    assert res.status_code == 200
    assert res.json()["user"]["role"] == "doctor"
    assert db["user"].find_one({"_id": patient_user["_id"]})["role"] == "doctor"
    assert client.get("/api/patients", headers=patient_user["headers"]).status_code == 200


def test_role_change_validation(client, admin, doctor, patient_user):
    url = f"/api/users/{patient_user['id']}/role"
    assert client.put(url, headers=admin["headers"], json={"role": "superuser"}).status_code == 400
    assert client.put(url, headers=doctor["headers"], json={"role": "admin"}).status_code == 403
    assert client.put(f"/api/users/{ObjectId()}/role", headers=admin["headers"],
                      json={"role": "doctor"}).status_code == 404


def test_get_user_self_or_admin(client, admin, doctor, patient_user):
    own = client.get(f"/api/users/{patient_user['id']}", headers=patient_user["headers"])
    assert own.status_code == 200
    assert own.json()["email"] == patient_user["email"]
    assert client.get(f"/api/users/{patient_user['id']}", headers=admin["headers"]).status_code == 200
    assert client.get(f"/api/users/{doctor['id']}", headers=patient_user["headers"]).status_code == 403


def test_admin_updates_user(client, db, admin, doctor, patient_user):
    url = f"/api/users/{patient_user['id']}"
    res = client.put(url, headers=admin["headers"], json={"full_name": "Paula P. Mora", "email": "PMORA@example.com"})
    assert res.status_code == 200
    assert res.json()["email"] == "pmora@example.com"
    assert db["user"].find_one({"_id": patient_user["_id"]})["full_name"] == "Paula P. Mora"

    assert client.put(url, headers=admin["headers"], json={"email": doctor["email"]}).status_code == 409
    assert client.put(url, headers=admin["headers"], json={}).status_code == 400
    assert client.put(url, headers=doctor["headers"], json={"full_name": "Someone"}).status_code == 403

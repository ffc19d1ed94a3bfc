import re

from conftest import auth_header, register, room_payload, student_payload


def test_student_crud(students_client, admin_headers):
    create_resp = students_client.post("/students", json=student_payload("Gia", program="Physics"), headers=admin_headers)
    assert create_resp.status_code == 201
    student = create_resp.json()
    assert re.fullmatch(r"\d{2}R\d{4}", student["student_number"])
    assert student["room_id"] is None
    assert student["payment_status"] is False

    by_number = students_client.get(f"/students/{student['student_number']}", headers=admin_headers)
    assert by_number.status_code == 200
    assert by_number.json()["id"] == student["id"]

    update_resp = students_client.put(
        f"/students/{student['id']}",
        json={"year_of_study": "2", "payment_status": True},
        headers=admin_headers,
    )
    assert update_resp.status_code == 200
    assert update_resp.json()["year_of_study"] == "2"
    assert update_resp.json()["payment_status"] is True

    assert students_client.delete(f"/students/{student['id']}", headers=admin_headers).status_code == 204
    assert students_client.get(f"/students/{student['id']}", headers=admin_headers).status_code == 404


def test_duplicate_email_conflicts(students_client, admin_headers):
    students_client.post("/students", json=student_payload("Hal"), headers=admin_headers)
    response = students_client.post("/students", json=student_payload("Hal"), headers=admin_headers)
    assert response.status_code == 409
    assert response.json() == {"error": "Email already exists"}


def test_explicit_student_number_is_kept_and_unique(students_client, admin_headers):
    first = students_client.post("/students", json=student_payload("Ida", student_number="S-100"), headers=admin_headers)
    assert first.json()["student_number"] == "S-100"
    second = students_client.post("/students", json=student_payload("Jon", student_number="S-100"), headers=admin_headers)
    assert second.status_code == 409


def test_student_update_cannot_touch_room(students_client, admin_headers):
    student = students_client.post("/students", json=student_payload("Kim"), headers=admin_headers).json()
    response = students_client.put(f"/students/{student['id']}", json={"room_id": 5}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["room_id"] is None


def test_list_students_filters(rooms_client, students_client, admin_headers):
    room = rooms_client.post("/rooms", json=room_payload(), headers=admin_headers).json()
    lea = students_client.post("/students", json=student_payload("Lea"), headers=admin_headers).json()
    students_client.post("/students", json=student_payload("Max"), headers=admin_headers)
    rooms_client.put(f"/rooms/{room['id']}/assign", json={"student_id": lea["id"]}, headers=admin_headers)

    assert [s["name"] for s in students_client.get("/students", headers=admin_headers).json()] == ["Lea", "Max"]
    assert [s["name"] for s in students_client.get("/students?assigned=true", headers=admin_headers).json()] == ["Lea"]
    assert [s["name"] for s in students_client.get("/students?assigned=false", headers=admin_headers).json()] == ["Max"]
    assert [s["name"] for s in students_client.get("/students?search=max", headers=admin_headers).json()] == ["Max"]

    listed = students_client.get("/students?assigned=true", headers=admin_headers).json()[0]
    assert listed["room"]["room_number"] == "A101"


def test_student_sees_own_profile_only(users_client, students_client, admin_headers, student_headers):
    me = students_client.get("/students/me", headers=student_headers)
    assert me.status_code == 200
    assert me.json()["email"] == "alice@example.com"
    assert me.json()["phone"] == "555-0100"

    own = students_client.get(f"/students/{me.json()['student_number']}", headers=student_headers)
    assert own.status_code == 200

    other = students_client.post("/students", json=student_payload("Ned"), headers=admin_headers).json()
    assert students_client.get(f"/students/{other['id']}", headers=student_headers).status_code == 403
    assert students_client.get("/students", headers=student_headers).status_code == 403


def test_admin_without_profile_has_no_me(students_client, admin_headers):
    response = students_client.get("/students/me", headers=admin_headers)
    assert response.status_code == 404
    assert response.json() == {"error": "No student profile for this account"}


def test_assigned_room_details(users_client, rooms_client, students_client, admin_headers, student_headers):
    me = students_client.get("/students/me", headers=student_headers).json()
    missing = students_client.get(f"/students/{me['student_number']}/room", headers=student_headers)
    assert missing.status_code == 404
    assert missing.json() == {"error": "No room assigned to this student"}

    room = rooms_client.post("/rooms", json=room_payload("R9", amenities=["desk"]), headers=admin_headers).json()
    rooms_client.put(f"/rooms/{room['id']}/assign", json={"student_id": me["id"]}, headers=admin_headers)

    details = students_client.get(f"/students/{me['student_number']}/room", headers=student_headers)
    assert details.status_code == 200
    body = details.json()
    assert body["room_number"] == "R9"
    assert body["amenities"] == ["desk"]
    assert "Quiet hours: 10 PM - 6 AM" in body["rules"]
    assert [occupant["id"] for occupant in body["occupants"]] == [me["id"]]

    rooms_client.put(f"/rooms/{room['id']}", json={"rules": ["No pets"]}, headers=admin_headers)
    custom = students_client.get(f"/students/{me['id']}/room", headers=admin_headers).json()
    assert custom["rules"] == ["No pets"]


def test_registration_links_existing_profile(users_client, students_client, admin_headers):
    created = students_client.post(
        "/students",
        json=student_payload("Ola", email="ola@example.com"),
        headers=admin_headers,
    ).json()
    register(users_client, "ola", email="ola@example.com")
    headers = auth_header(users_client, "ola")

    me = students_client.get("/students/me", headers=headers).json()
    assert me["id"] == created["id"]


def test_required_fields_cannot_be_cleared(students_client, admin_headers):
    student = students_client.post("/students", json=student_payload("Oli"), headers=admin_headers).json()

    response = students_client.put(f"/students/{student['id']}", json={"name": None}, headers=admin_headers)
    assert response.status_code == 422
    assert response.json()["error"] == "Validation failed"

    cleared_program = students_client.put(f"/students/{student['id']}", json={"program": None}, headers=admin_headers)
    assert cleared_program.status_code == 200
    assert students_client.get(f"/students/{student['id']}", headers=admin_headers).json()["name"] == "Oli"


def test_update_to_taken_email_conflicts(students_client, admin_headers):
    students_client.post("/students", json=student_payload("Pam"), headers=admin_headers)
    quin = students_client.post("/students", json=student_payload("Quin"), headers=admin_headers).json()

    response = students_client.put(
        f"/students/{quin['id']}", json={"email": "pam@students.example.com"}, headers=admin_headers
    )
    assert response.status_code == 409
    assert response.json() == {"error": "Email already exists"}

from datetime import timedelta


# --- Dispatch ---
def test_empty_request_is_bad_request(library):
    data = library.handle(b"")
    assert data.startswith(b"HTTP/1.1 400 Bad Request")


def test_unknown_route_is_not_found(call):
    response = call("GET", "/api/nothing-here")
    assert response.status_code == 404
    assert response.json() == {"error": "Not Found"}
    assert response.headers["access-control-allow-origin"] == "*"


def test_options_preflight(call):
    response = call("OPTIONS", "/api/books")
    assert response.status_code == 204
    assert "authorization" in response.headers["access-control-allow-headers"].lower()


# --- Auth ---
def test_register_login_me_round_trip(call):
    response = call("POST", "/api/auth/register", {"username": "ada", "email": "ada@example.com", "password": "pw"})
    assert response.status_code == 201
    registered = response.json()
    assert registered["username"] == "ada"
    assert registered["role"] == "lender"
    assert "password_hash" not in registered

    response = call("POST", "/api/auth/login", {"username": "ada", "password": "pw"})
    assert response.status_code == 200
    token = response.json()["token"]
    assert response.json()["user"] == registered

    response = call("GET", "/api/auth/me", token=token)
    assert response.status_code == 200
    assert response.json() == registered


def test_register_cannot_choose_role(call):
    response = call(
        "POST", "/api/auth/register",
        {"username": "eve", "email": "eve@example.com", "password": "pw", "role": "admin"},
    )
    assert response.status_code == 201
    assert response.json()["role"] == "lender"


def test_register_validation(call):
    assert call("POST", "/api/auth/register", raw_body="{oops").status_code == 400
    response = call("POST", "/api/auth/register", {"username": "ada", "email": "", "password": "pw"})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing required fields"}
    response = call("POST", "/api/auth/register", {"username": "ada", "email": "a@x", "password": 42})
    assert response.json() == {"error": "Invalid request body"}


def test_register_duplicate_is_conflict(call):
    payload = {"username": "ada", "email": "ada@example.com", "password": "pw"}
    assert call("POST", "/api/auth/register", payload).status_code == 201
    response = call("POST", "/api/auth/register", payload)
    assert response.status_code == 409


def test_login_wrong_password(call, login_as):
    login_as("ada")
    response = call("POST", "/api/auth/login", {"username": "ada", "password": "nope"})
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid credentials"}


def test_me_requires_token(call):
    assert call("GET", "/api/auth/me").status_code == 401
    assert call("GET", "/api/auth/me", token="bogus").status_code == 401


def test_logout_invalidates_token(call, login_as):
    token = login_as("ada")
    response = call("POST", "/api/auth/logout", token=token)
    assert response.status_code == 200
    assert response.json() == {"message": "Logged out successfully"}
    assert call("GET", "/api/auth/me", token=token).status_code == 401


def test_logout_without_token_is_success(call):
    assert call("POST", "/api/auth/logout").status_code == 200
    assert call("POST", "/api/auth/logout", token="bogus").status_code == 200


def test_expired_session_is_unauthorized(call, clock, login_as):
    token = login_as("ada")
    clock.advance(timedelta(hours=24, seconds=1))
    assert call("GET", "/api/auth/me", token=token).status_code == 401


# --- Books ---
def test_book_admin_routes_require_admin(call, login_as):
    payload = {"title": "T", "author": "A", "isbn": "1", "total_copies": 1}
    assert call("POST", "/api/books", payload).status_code == 401
    token = login_as("ada")
    response = call("POST", "/api/books", payload, token=token)
    assert response.status_code == 403
    assert response.json() == {"error": "Forbidden"}
    assert call("PUT", "/api/books/1", {"title": "X"}, token=token).status_code == 403
    assert call("DELETE", "/api/books/1", token=token).status_code == 403


def test_create_list_and_search_books(call, make_book):
    created = make_book(publication_year=1922, genre="Modernism", total_copies=3)
    assert created["available_copies"] == 3
    assert created["publication_year"] == 1922
    make_book(isbn="9780099590088", title="Sapiens", author="Yuval Noah Harari")

    books = call("GET", "/api/books").json()
    assert [b["title"] for b in books] == ["Sapiens", "Ulysses"]

    found = call("GET", "/api/books/search?q=James%20Joyce").json()
    assert [b["title"] for b in found] == ["Ulysses"]
    assert call("GET", "/api/books/search?q=nothing").json() == []


def test_create_book_validation(call, admin_token):
    response = call("POST", "/api/books", {"title": "T", "author": "A", "isbn": "1", "total_copies": -1}, token=admin_token)
    assert response.status_code == 400
    response = call("POST", "/api/books", {"title": "T"}, token=admin_token)
    assert response.status_code == 400


def test_create_book_duplicate_isbn(call, admin_token, make_book):
    make_book()
    response = call("POST", "/api/books", {"title": "T", "author": "A", "isbn": "9780199535675", "total_copies": 1}, token=admin_token)
    assert response.status_code == 409


def test_update_book(call, admin_token, make_book):
    book = make_book(total_copies=2)
    response = call("PUT", f"/api/books/{book['id']}", {"title": "Ulysses (1922)", "total_copies": 4}, token=admin_token)
    assert response.status_code == 200
    updated = response.json()
    assert updated["title"] == "Ulysses (1922)"
    assert updated["author"] == "James Joyce"
    assert (updated["total_copies"], updated["available_copies"]) == (4, 4)


def test_update_book_rejects_shrinking_below_borrowed(call, admin_token, make_book, login_as):
    book = make_book(total_copies=1)
    token = login_as("ada")
    assert call("POST", f"/api/lending/borrow/{book['id']}", token=token).status_code == 201
    response = call("PUT", f"/api/books/{book['id']}", {"total_copies": 0}, token=admin_token)
    assert response.status_code == 409


def test_update_and_delete_missing_book(call, admin_token):
    assert call("PUT", "/api/books/999", {"title": "X"}, token=admin_token).status_code == 404
    assert call("DELETE", "/api/books/999", token=admin_token).status_code == 404
    assert call("DELETE", "/api/books/abc", token=admin_token).status_code == 404


def test_delete_book(call, admin_token, make_book):
    book = make_book()
    response = call("DELETE", f"/api/books/{book['id']}", token=admin_token)
    assert response.status_code == 200
    assert response.json() == {"message": "Book deleted successfully"}
    assert call("GET", "/api/books").json() == []


# --- Lending ---
def test_borrow_return_scenario(call, make_book, login_as):
    book = make_book(total_copies=1)
    ada = login_as("ada")
    bob = login_as("bob")

    response = call("POST", f"/api/lending/borrow/{book['id']}", token=ada)
    assert response.status_code == 201
    assert response.json()["message"] == "Book borrowed successfully"
    record_id = response.json()["record_id"]
    assert call("GET", "/api/books").json()[0]["available_copies"] == 0

    response = call("POST", f"/api/lending/borrow/{book['id']}", token=bob)
    assert response.status_code == 409

    response = call("POST", f"/api/lending/return/{record_id}", token=ada)
    assert response.status_code == 200
    assert response.json() == {"message": "Book returned successfully"}
    assert call("GET", "/api/books").json()[0]["available_copies"] == 1

    assert call("POST", f"/api/lending/borrow/{book['id']}", token=bob).status_code == 201


HUGE_ID = "9" * 25


def test_ids_beyond_storage_range_are_not_found(call, admin_token, login_as):
    token = login_as("ada")
    assert call("POST", f"/api/lending/borrow/{HUGE_ID}", token=token).status_code == 404
    assert call("POST", f"/api/lending/return/{HUGE_ID}", token=token).status_code == 404
    assert call("PUT", f"/api/books/{HUGE_ID}", {"title": "X"}, token=admin_token).status_code == 404
    response = call("DELETE", f"/api/books/{HUGE_ID}", token=admin_token)
    assert response.status_code == 404
    assert response.json() == {"error": "Not Found"}


def test_counts_beyond_storage_range_are_bad_requests(call, admin_token, make_book):
    payload = {"title": "T", "author": "A", "isbn": "1", "total_copies": int(HUGE_ID)}
    assert call("POST", "/api/books", payload, token=admin_token).status_code == 400
    payload = {"title": "T", "author": "A", "isbn": "1", "total_copies": 1, "publication_year": int(HUGE_ID)}
    assert call("POST", "/api/books", payload, token=admin_token).status_code == 400
    book = make_book()
    response = call("PUT", f"/api/books/{book['id']}", {"total_copies": int(HUGE_ID)}, token=admin_token)
    assert response.status_code == 400
    assert call("GET", "/api/books").json()[0]["total_copies"] == 1


def test_borrow_requires_token(call, make_book):
    book = make_book()
    assert call("POST", f"/api/lending/borrow/{book['id']}").status_code == 401


def test_borrow_missing_or_malformed_book(call, login_as):
    token = login_as("ada")
    assert call("POST", "/api/lending/borrow/999", token=token).status_code == 404
    assert call("POST", "/api/lending/borrow/xyz", token=token).status_code == 404


def test_return_errors_are_indistinguishable(call, make_book, login_as):
    book = make_book()
    ada = login_as("ada")
    bob = login_as("bob")
    record_id = call("POST", f"/api/lending/borrow/{book['id']}", token=ada).json()["record_id"]

    not_owner = call("POST", f"/api/lending/return/{record_id}", token=bob)
    missing = call("POST", f"/api/lending/return/{record_id + 50}", token=bob)
    assert not_owner.status_code == missing.status_code == 404
    assert not_owner.json() == missing.json()

    assert call("POST", f"/api/lending/return/{record_id}", token=ada).status_code == 200
    again = call("POST", f"/api/lending/return/{record_id}", token=ada)
    assert again.status_code == 404
    assert again.json() == missing.json()
    assert call("GET", "/api/books").json()[0]["available_copies"] == 1


def test_my_books(call, make_book, login_as):
    book = make_book(total_copies=2)
    ada = login_as("ada")
    call("POST", f"/api/lending/borrow/{book['id']}", token=ada)
    mine = call("GET", "/api/lending/my-books", token=ada).json()
    assert len(mine) == 1
    assert mine[0]["title"] == "Ulysses"
    assert mine[0]["username"] == "ada"
    assert mine[0]["status"] == "borrowed"
    assert call("GET", "/api/lending/my-books", token=login_as("bob")).json() == []


# --- Admin ---
def test_admin_listings(call, admin_token, make_book, login_as, clock):
    book = make_book(total_copies=2)
    ada = login_as("ada")
    call("POST", f"/api/lending/borrow/{book['id']}", token=ada)

    users = call("GET", "/api/admin/users", token=admin_token).json()
    assert {u["username"] for u in users} == {"admin", "ada"}
    assert all("password_hash" not in u for u in users)

    active = call("GET", "/api/admin/lending/active", token=admin_token).json()
    assert [r["username"] for r in active] == ["ada"]
    assert call("GET", "/api/admin/lending/overdue", token=admin_token).json() == []

    clock.advance(timedelta(days=15))
    # Sessions last a day, so the admin signs in again after the loan falls due
    fresh = call("POST", "/api/auth/login", {"username": "admin", "password": "admin123"}).json()["token"]
    response = call("GET", "/api/admin/lending/overdue", token=fresh)
    assert response.status_code == 200
    overdue = response.json()
    assert len(overdue) == 1
    assert overdue[0]["username"] == "ada"
    assert overdue[0]["status"] == "overdue"


def test_admin_listings_require_admin(call, login_as):
    token = login_as("ada")
    for path in ("/api/admin/users", "/api/admin/lending/active", "/api/admin/lending/overdue"):
        assert call("GET", path).status_code == 401
        assert call("GET", path, token=token).status_code == 403


# --- Frontend ---
def test_frontend_files(call, test_settings):
    assert call("GET", "/").status_code == 404

    import os
    os.makedirs(test_settings.frontend_dir)
    with open(os.path.join(test_settings.frontend_dir, "index.html"), "w") as f:
        f.write("<h1>Library</h1>")
    response = call("GET", "/")
    assert response.status_code == 200
    assert response.headers["content-type"] == "text/html"
    assert response.body == b"<h1>Library</h1>"

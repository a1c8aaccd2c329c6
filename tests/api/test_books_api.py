from unittest.mock import AsyncMock, patch

from bson import ObjectId

from bookhive.exceptions import BookNotFoundError, DuplicateIsbnError
from bookhive.models import AvailabilityModel, BookModel

BOOK_PAYLOAD = {
    "title": "The Hobbit",
    "author": "J.R.R. Tolkien",
    "genre": "FANTASY",
    "isbn": "9780547928227",
    "description": "There and back again",
    "copies": 4,
}


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.text == "BookHive API is running!"


@patch("bookhive.main.create_book", new_callable=AsyncMock)
def test_add_book(mock_create_book, client, book_doc):
    doc = book_doc(**BOOK_PAYLOAD)
    mock_create_book.return_value = BookModel(**doc)

    response = client.post("/api/books", json=BOOK_PAYLOAD)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Book created successfully"
    assert body["data"]["id"] == str(doc["_id"])
    assert body["data"]["available"] is True
    mock_create_book.assert_awaited_once()


def test_add_book_validation_failure(client):
    response = client.post("/api/books", json={**BOOK_PAYLOAD, "copies": -1, "title": ""})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Validation failed"
    assert "copies" in body["errors"]
    assert "title" in body["errors"]


@patch("bookhive.main.create_book", new_callable=AsyncMock)
def test_add_book_duplicate_isbn(mock_create_book, client):
    mock_create_book.side_effect = DuplicateIsbnError(BOOK_PAYLOAD["isbn"])

    response = client.post("/api/books", json=BOOK_PAYLOAD)

    assert response.status_code == 400
    body = response.json()
    assert body["message"] == "Book with this ISBN already exists"
    assert "isbn" in body["errors"]


@patch("bookhive.main.list_books", new_callable=AsyncMock)
def test_read_books_paginates(mock_list_books, client, book_doc):
    mock_list_books.return_value = ([BookModel(**book_doc())], 21)

    response = client.get(
        "/api/books",
        params={"page": 2, "limit": 10, "genre": "SCIENCE_FICTION", "sort_by": "title"},
    )

    assert response.status_code == 200
    body = response.json()
    assert len(body["data"]) == 1
    assert body["pagination"] == {
        "current_page": 2,
        "total_pages": 3,
        "total_items": 21,
        "has_next": True,
        "has_prev": True,
    }
    _, filters, page, limit = mock_list_books.call_args.args
    assert filters.genre == "SCIENCE_FICTION"
    assert filters.sort_by == "title"
    assert (page, limit) == (2, 10)


def test_read_books_rejects_bad_paging(client):
    assert client.get("/api/books", params={"page": 0}).status_code == 400
    assert client.get("/api/books", params={"limit": 1000}).status_code == 400
    assert client.get("/api/books", params={"sort_by": "password"}).status_code == 400


@patch("bookhive.main.list_available_books", new_callable=AsyncMock)
def test_read_available_books(mock_available, client, book_doc):
    mock_available.return_value = [BookModel(**book_doc()), BookModel(**book_doc())]

    response = client.get("/api/books/available")

    assert response.status_code == 200
    assert response.json()["count"] == 2


@patch("bookhive.main.list_books_by_genre", new_callable=AsyncMock)
def test_read_books_by_genre(mock_by_genre, client, book_doc):
    mock_by_genre.return_value = [BookModel(**book_doc(genre="FANTASY"))]

    response = client.get("/api/books/genre/FANTASY")

    assert response.status_code == 200
    body = response.json()
    assert body["genre"] == "FANTASY"
    assert body["count"] == 1
    assert body["data"][0]["genre"] == "FANTASY"
    assert mock_by_genre.call_args.args[1] == "FANTASY"


def test_read_book_with_malformed_id(client):
    response = client.get("/api/books/not-an-id")

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Invalid book ID format",
        "errors": {"id": "Invalid ID format"},
    }


@patch("bookhive.main.get_book", new_callable=AsyncMock)
def test_read_missing_book(mock_get_book, client):
    book_id = str(ObjectId())
    mock_get_book.side_effect = BookNotFoundError(book_id)

    response = client.get(f"/api/books/{book_id}")

    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Book not found"}


@patch("bookhive.main.update_book", new_callable=AsyncMock)
def test_modify_book_accepts_patch_and_put(mock_update_book, client, book_doc):
    doc = book_doc(copies=0, available=False)
    mock_update_book.return_value = BookModel(**doc)

    for method in ("patch", "put"):
        response = getattr(client, method)(f"/api/books/{doc['_id']}", json={"copies": 0})
        assert response.status_code == 200
        assert response.json()["data"]["available"] is False

    assert mock_update_book.await_count == 2


def test_modify_book_rejects_availability_field(client):
    response = client.patch(f"/api/books/{ObjectId()}", json={"available": False})
    assert response.status_code == 400


@patch("bookhive.main.refresh_availability", new_callable=AsyncMock)
def test_modify_book_availability(mock_refresh, client):
    mock_refresh.return_value = AvailabilityModel(available=True, copies=2)

    response = client.put(f"/api/books/{ObjectId()}/availability")

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Book availability updated"
    assert body["data"] == {"available": True, "copies": 2}


@patch("bookhive.main.delete_book", new_callable=AsyncMock)
def test_remove_book(mock_delete_book, client):
    mock_delete_book.return_value = 2

    response = client.delete(f"/api/books/{ObjectId()}")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Book and associated borrow records deleted successfully",
    }

import pytest


def test_admin_creates_product(client, admin_headers, database):
    response = client.post(
        "/api/v1/create-product",
        json={"productName": "Chicken Burger", "price": 2500},
        headers=admin_headers,
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["data"]["productName"] == "Chicken Burger"
    assert body["data"]["price"] == 2500
    assert database.products.count_documents({"name_key": "chicken burger"}) == 1


def test_product_names_are_unique_ignoring_case(client, admin_headers, product):
    response = client.post(
        "/api/v1/create-product",
        json={"productName": "chicken BURGER", "price": 3500},
        headers=admin_headers,
    )

    assert response.status_code == 409
    assert response.get_json()["message"] == "Product already exists"


def test_non_admin_cannot_create_product(client, buyer_headers, database):
    response = client.post(
        "/api/v1/create-product",
        json={"productName": "Fries", "price": 900},
        headers=buyer_headers,
    )

    assert response.status_code == 403
    assert database.products.count_documents({}) == 0


def test_create_product_requires_token(client):
    response = client.post("/api/v1/create-product", json={"productName": "Fries", "price": 900})

    assert response.status_code == 401


def test_create_product_validation(client, admin_headers):
    blank = client.post(
        "/api/v1/create-product", json={"productName": " ", "price": 10}, headers=admin_headers
    )
    negative = client.post(
        "/api/v1/create-product", json={"productName": "Fries", "price": -1}, headers=admin_headers
    )
    garbage = client.post(
        "/api/v1/create-product", json={"productName": "Fries", "price": "cheap"}, headers=admin_headers
    )

    assert blank.status_code == 400
    assert negative.status_code == 400
    assert garbage.status_code == 400


@pytest.mark.parametrize("price", ["nan", "inf", "-inf", "Infinity"])
def test_create_product_rejects_non_finite_price(client, admin_headers, database, price):
    response = client.post(
        "/api/v1/create-product", json={"productName": "Ghost", "price": price}, headers=admin_headers
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "Price must be a valid number."
    assert database.products.count_documents({}) == 0


def test_free_product_is_allowed(client, admin_headers):
    response = client.post(
        "/api/v1/create-product", json={"productName": "Water", "price": 0}, headers=admin_headers
    )

    assert response.status_code == 201


def test_list_and_fetch_products(client, product):
    listing = client.get("/api/v1/products")
    single = client.get(f"/api/v1/products/{product['_id']}")

    assert [item["productName"] for item in listing.get_json()["data"]] == ["Chicken Burger"]
    assert single.status_code == 200
    assert single.get_json()["data"]["price"] == 2500


def test_unknown_product_is_not_found(client):
    assert client.get("/api/v1/products/64b7f0f0f0f0f0f0f0f0f0f0").status_code == 404
    assert client.get("/api/v1/products/not-an-id").status_code == 404

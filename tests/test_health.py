"""Tests for health check endpoint."""


def test_health_check(api_client):
    """Test the health endpoint."""
    response = api_client.get("/api/v1/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["version"] == "0.1.0"
    assert data["worker_mode"] == "local"
    assert data["active_book_id"] is None


def test_health_reports_queue_status(api_client):
    response = api_client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["queue"] == {"in_flight": 0, "queued": 0}


def test_health_reports_active_book(api_client, sample_chapters):
    chapters = [{"id": c.id, "title": c.title, "body": c.body} for c in sample_chapters]
    api_client.post("/api/v1/books/moby-dick/index", json={"chapters": chapters})

    response = api_client.get("/api/v1/health")
    assert response.json()["active_book_id"] == "moby-dick"

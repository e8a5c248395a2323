def test_healthz(client):
    rv = client.get("/healthz")
    assert rv.status_code == 200
    assert rv.json["ok"] is True
    assert rv.json["stream_version"] == 1


def test_metrics_exposed(client):
    rv = client.get("/metrics")
    assert rv.status_code == 200
    assert b"app_info" in rv.data

"""
Tests: Billing API.

Covers:
    - Context create / get + error codes
    - Draft → latest → history → finalize
    - Formula errors surfaced as 422 ERR_FORMULA
    - Single-run preview
"""

from app.services import order_service, workflow_engine


def _ready_order(make_order, count=1, rate="2.5"):
    order = make_order(count=count)
    for op in order.processes:
        for run in op.runs:
            order_service.submit_run_fields(run.id, {"Quantity": 10, "New Rate": rate})
    return order


def _create_context(client, order_ids, context_type="ORDER", **kw):
    res = client.post("/api/v1/billing/contexts",
                      json={"type": context_type, "order_ids": order_ids, **kw})
    assert res.status_code == 201
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════════
# CONTEXTS
# ═════════════════════════════════════════════════════════════════════════════

class TestContextsAPI:
    def test_create_and_get(self, client, make_order):
        order = make_order()
        ctx = _create_context(client, [order.id])
        assert ctx["type"] == "ORDER"
        assert ctx["name"] == order.code
        assert ctx["order_ids"] == [order.id]

        res = client.get(f"/api/v1/billing/contexts/{ctx['id']}")
        assert res.status_code == 200
        assert res.get_json()["id"] == ctx["id"]

    def test_type_required(self, client, make_order):
        res = client.post("/api/v1/billing/contexts", json={"order_ids": [make_order().id]})
        assert res.status_code == 400

    def test_order_ids_required(self, client, workflows):
        res = client.post("/api/v1/billing/contexts", json={"type": "GROUP"})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_duplicate_order_context(self, client, make_order):
        order = make_order()
        _create_context(client, [order.id])
        res = client.post("/api/v1/billing/contexts", json={"type": "ORDER", "order_ids": [order.id]})
        assert res.status_code == 409

    def test_unknown_order(self, client, workflows):
        res = client.post("/api/v1/billing/contexts", json={"type": "GROUP", "order_ids": ["ghost"]})
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_get_missing(self, client, workflows):
        assert client.get("/api/v1/billing/contexts/missing").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# SNAPSHOTS
# ═════════════════════════════════════════════════════════════════════════════

class TestSnapshotsAPI:
    def test_draft_latest_history_finalize(self, client, make_order):
        order = _ready_order(make_order, count=2)
        workflow_engine.apply_transition(order.id, order.workflow_type_id)
        ctx = _create_context(client, [order.id])
        base = f"/api/v1/billing/contexts/{ctx['id']}"

        res = client.get(f"{base}/snapshots/latest")
        assert res.status_code == 404

        res = client.post(f"{base}/drafts", json={"reason": "quote"}, headers={"X-User": "alice"})
        assert res.status_code == 201
        draft = res.get_json()
        assert draft["version"] == 1
        assert draft["total"] == "50.00"
        assert draft["created_by"] == "alice"
        assert draft["reason"] == "quote"

        run_id = order.processes[0].runs[0].id
        res = client.post(f"{base}/drafts", json={"inputs": {run_id: {"new_rate": "3.125"}}})
        assert res.status_code == 201
        assert res.get_json()["result"] == "31.2500"
        assert res.get_json()["total"] == "31.25"

        latest = client.get(f"{base}/snapshots/latest").get_json()
        assert latest["version"] == 2

        history = client.get(f"{base}/snapshots").get_json()
        assert history["total"] == 2
        assert [s["is_latest"] for s in history["items"]] == [False, True]

        res = client.post(f"{base}/finalize", headers={"X-User": "bob"})
        assert res.status_code == 201
        final = res.get_json()
        assert (final["version"], final["intent"], final["result"]) == (3, "FINAL", "31.2500")

        order_res = client.get(f"/api/v1/workflow/orders/{order.id}")
        assert order_res.get_json()["status_code"] == "BILLED"

    def test_inputs_must_be_object(self, client, make_order):
        ctx = _create_context(client, [make_order().id])
        res = client.post(f"/api/v1/billing/contexts/{ctx['id']}/drafts", json={"inputs": [1]})
        assert res.status_code == 400

    def test_missing_variable_is_formula_error(self, client, make_order):
        order = make_order()
        ctx = _create_context(client, [order.id])
        res = client.post(f"/api/v1/billing/contexts/{ctx['id']}/drafts", json={})
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_FORMULA"
        assert body["details"]["variable"] == "new_rate"

    def test_foreign_run_rejected(self, client, make_order):
        order, other = make_order(), make_order()
        ctx = _create_context(client, [order.id])
        foreign = other.processes[0].runs[0].id
        res = client.post(f"/api/v1/billing/contexts/{ctx['id']}/drafts",
                          json={"inputs": {foreign: {}}})
        assert res.status_code == 422
        assert res.get_json()["details"] == {"run_ids": [foreign]}

    def test_finalize_without_draft(self, client, make_order):
        ctx = _create_context(client, [make_order().id])
        res = client.post(f"/api/v1/billing/contexts/{ctx['id']}/finalize")
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"

    def test_history_unknown_context(self, client, workflows):
        assert client.get("/api/v1/billing/contexts/missing/snapshots").status_code == 404

    def test_group_context(self, client, make_order):
        a, b = _ready_order(make_order), _ready_order(make_order, rate="1")
        group = _create_context(client, [a.id, b.id], context_type="GROUP", name="Week 14")
        inputs = {a.processes[0].runs[0].id: {}, b.processes[0].runs[0].id: {}}
        res = client.post(f"/api/v1/billing/contexts/{group['id']}/drafts", json={"inputs": inputs})
        assert res.status_code == 201
        assert res.get_json()["result"] == "35.0000"


# ═════════════════════════════════════════════════════════════════════════════
# PREVIEW
# ═════════════════════════════════════════════════════════════════════════════

class TestPreviewAPI:
    def test_preview(self, client, make_order):
        order = _ready_order(make_order)
        run_id = order.processes[0].runs[0].id
        res = client.post(f"/api/v1/billing/runs/{run_id}/preview",
                          json={"inputs": {"new_rate": "0.105"}})
        assert res.status_code == 200
        data = res.get_json()
        assert data["amount"] == "1.0500"
        assert data["presented_amount"] == "1.05"
        assert data["variables"] == {"quantity": "10", "new_rate": "0.105"}

    def test_preview_bad_inputs(self, client, make_order):
        run_id = make_order().processes[0].runs[0].id
        res = client.post(f"/api/v1/billing/runs/{run_id}/preview", json={"inputs": "x"})
        assert res.status_code == 400

    def test_preview_missing_run(self, client, workflows):
        res = client.post("/api/v1/billing/runs/missing/preview", json={})
        assert res.status_code == 404

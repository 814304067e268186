import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

os.environ.setdefault("BOT_TOKEN", "test-token")

import app  # noqa: E402
import finance_models  # noqa: E402
import telegram_auth as ta  # noqa: E402

BOT_TOKEN = "BOT_SECRET"


class FinanceApiTestCase(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.cfg = app.Config(
            BOT_TOKEN=BOT_TOKEN,
            APP_ENV="development",
            DB_PATH=str(Path(self._tmpdir.name) / "test.sqlite3"),
            SESSION_SECRET="test-session-secret",
        )
        app.init_db(self.cfg)
        self.client = TestClient(app.build_app(self.cfg))
        self.headers = self._login(111)

    def tearDown(self):
        self._tmpdir.cleanup()

    def _login(self, telegram_id: int) -> dict:
        init_data = ta.synthesize(
            {"id": telegram_id, "first_name": f"User{telegram_id}"}, BOT_TOKEN, mode=ta.Mode.DEVELOPMENT
        )
        res = self.client.post("/api/auth/telegram", json={"initData": init_data})
        self.assertEqual(res.status_code, 200, res.text)
        return {"Authorization": f"Bearer {res.json()['token']}"}

    def _create_account(self, name="Cash", balance=0, headers=None, **extra) -> dict:
        res = self.client.post(
            "/api/accounts",
            json={"name": name, "balance": balance, **extra},
            headers=headers or self.headers,
        )
        self.assertEqual(res.status_code, 201, res.text)
        return res.json()["item"]

    def _category_id(self, name: str, headers=None) -> int:
        res = self.client.get("/api/categories", headers=headers or self.headers)
        for c in res.json()["items"]:
            if c["name"] == name:
                return int(c["id"])
        raise AssertionError(f"category {name} not found")

    def _add_tx(self, account_id, category, amount, tx_type, expected=201, **extra):
        res = self.client.post(
            "/api/transactions",
            json={
                "account_id": account_id,
                "category_id": self._category_id(category),
                "amount": amount,
                "type": tx_type,
                **extra,
            },
            headers=self.headers,
        )
        self.assertEqual(res.status_code, expected, res.text)
        return res.json()

    def _balance(self, account_id) -> float:
        res = self.client.get(f"/api/accounts/{account_id}", headers=self.headers)
        self.assertEqual(res.status_code, 200)
        return res.json()["item"]["balance"]


class AccountApiTests(FinanceApiTestCase):
    def test_requires_auth(self):
        self.assertEqual(self.client.get("/api/accounts").status_code, 401)

    def test_create_list_update_delete(self):
        acc = self._create_account("Wallet", 50, type="cash", currency="usd")
        self.assertEqual(acc["currency"], "USD")
        self.assertTrue(acc["is_active"])

        items = self.client.get("/api/accounts", headers=self.headers).json()["items"]
        self.assertEqual([a["name"] for a in items], ["Wallet"])

        res = self.client.put(
            f"/api/accounts/{acc['id']}", json={"name": "Main wallet", "color": "#000000"}, headers=self.headers
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["item"]["name"], "Main wallet")
        self.assertEqual(res.json()["item"]["balance"], 50)

        res = self.client.delete(f"/api/accounts/{acc['id']}", headers=self.headers)
        self.assertEqual(res.json(), {"ok": True})
        self.assertEqual(self.client.get(f"/api/accounts/{acc['id']}", headers=self.headers).status_code, 404)

    def test_duplicate_name_conflicts(self):
        self._create_account("Cash")
        res = self.client.post("/api/accounts", json={"name": "Cash"}, headers=self.headers)
        self.assertEqual(res.status_code, 409)

    def test_invalid_type_and_color(self):
        res = self.client.post("/api/accounts", json={"name": "X", "type": "stocks"}, headers=self.headers)
        self.assertEqual(res.status_code, 400)
        res = self.client.post("/api/accounts", json={"name": "X", "color": "red"}, headers=self.headers)
        self.assertEqual(res.status_code, 422)
        res = self.client.post("/api/accounts", json={"name": "X", "balance": -1}, headers=self.headers)
        self.assertEqual(res.status_code, 422)

    def test_balance_is_not_updatable_directly(self):
        acc = self._create_account("Cash", 10)
        res = self.client.put(f"/api/accounts/{acc['id']}", json={"balance": 1000}, headers=self.headers)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(self._balance(acc["id"]), 10)

    def test_summary_groups_by_currency_and_skips_inactive(self):
        self._create_account("Cash", 100)
        self._create_account("Card", 50.5)
        self._create_account("Dollars", 7, currency="USD")
        hidden = self._create_account("Old", 1000)
        self.client.put(f"/api/accounts/{hidden['id']}", json={"is_active": False}, headers=self.headers)

        data = self.client.get("/api/accounts/summary", headers=self.headers).json()
        self.assertEqual(data["count"], 3)
        self.assertEqual(data["totals"], {"RUB": 150.5, "USD": 7})

        active = self.client.get("/api/accounts?is_active=true", headers=self.headers).json()["items"]
        self.assertNotIn("Old", [a["name"] for a in active])

    def test_account_with_transactions_cannot_be_deleted(self):
        acc = self._create_account("Cash", 10)
        self._add_tx(acc["id"], "Зарплата", 5, "income")
        res = self.client.delete(f"/api/accounts/{acc['id']}", headers=self.headers)
        self.assertEqual(res.status_code, 409)


class CategoryApiTests(FinanceApiTestCase):
    def test_defaults_are_visible(self):
        items = self.client.get("/api/categories", headers=self.headers).json()["items"]
        names = {c["name"] for c in items}
        self.assertEqual(len(items), len(finance_models.DEFAULT_CATEGORIES))
        self.assertIn("Продукты", names)
        self.assertTrue(all(c["is_default"] for c in items))

    def test_by_type(self):
        res = self.client.get("/api/categories/by-type/income", headers=self.headers)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(all(c["type"] == "income" for c in res.json()["items"]))

        res = self.client.get("/api/categories/by-type/transfer", headers=self.headers)
        self.assertEqual(res.status_code, 400)

    def test_own_category_lifecycle(self):
        res = self.client.post(
            "/api/categories", json={"name": "Книги", "type": "expense", "color": "#112233"}, headers=self.headers
        )
        self.assertEqual(res.status_code, 201, res.text)
        cat = res.json()["item"]
        self.assertFalse(cat["is_default"])

        items = self.client.get("/api/categories", headers=self.headers).json()["items"]
        self.assertEqual(items[0]["name"], "Книги")

        res = self.client.put(f"/api/categories/{cat['id']}", json={"name": "Журналы"}, headers=self.headers)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["item"]["name"], "Журналы")

        res = self.client.delete(f"/api/categories/{cat['id']}", headers=self.headers)
        self.assertEqual(res.status_code, 200)

    def test_default_name_conflicts(self):
        res = self.client.post("/api/categories", json={"name": "Продукты", "type": "expense"}, headers=self.headers)
        self.assertEqual(res.status_code, 409)
        res = self.client.post("/api/categories", json={"name": "Продукты", "type": "income"}, headers=self.headers)
        self.assertEqual(res.status_code, 201)

    def test_default_category_is_read_only(self):
        cat_id = self._category_id("Продукты")
        self.assertEqual(self.client.get(f"/api/categories/{cat_id}", headers=self.headers).status_code, 200)
        res = self.client.put(f"/api/categories/{cat_id}", json={"name": "Еда"}, headers=self.headers)
        self.assertEqual(res.status_code, 404)
        self.assertEqual(self.client.delete(f"/api/categories/{cat_id}", headers=self.headers).status_code, 404)

    def test_type_change_blocked_while_used(self):
        acc = self._create_account("Cash", 10)
        res = self.client.post("/api/categories", json={"name": "Фриланс", "type": "income"}, headers=self.headers)
        cat = res.json()["item"]
        self._add_tx(acc["id"], "Фриланс", 5, "income")

        res = self.client.put(f"/api/categories/{cat['id']}", json={"type": "expense"}, headers=self.headers)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(self.client.delete(f"/api/categories/{cat['id']}", headers=self.headers).status_code, 409)

    def test_seed_defaults_is_idempotent(self):
        res = self.client.post("/api/categories/seed-defaults")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"ok": True, "added": 0, "count": len(finance_models.DEFAULT_CATEGORIES)})


class TransactionApiTests(FinanceApiTestCase):
    def test_income_and_expense_adjust_balance(self):
        acc = self._create_account("Cash", 100)
        income = self._add_tx(acc["id"], "Зарплата", 50, "income", description="March")["item"]
        self.assertEqual(income["account"]["name"], "Cash")
        self.assertEqual(income["category"]["name"], "Зарплата")
        self.assertEqual(self._balance(acc["id"]), 150)

        self._add_tx(acc["id"], "Продукты", 30.25, "expense")
        self.assertEqual(self._balance(acc["id"]), 119.75)

    def test_expense_over_balance_is_rejected(self):
        acc = self._create_account("Cash", 10)
        data = self._add_tx(acc["id"], "Продукты", 10.01, "expense", expected=400)
        self.assertEqual(data["detail"], "Insufficient balance")
        self.assertEqual(self._balance(acc["id"]), 10)

    def test_expense_equal_to_fractional_balance_is_accepted(self):
        acc = self._create_account("Cash", 0)
        self._add_tx(acc["id"], "Зарплата", 0.3, "income")
        self._add_tx(acc["id"], "Продукты", 0.1, "expense")
        self.assertEqual(self._balance(acc["id"]), 0.2)

        self._add_tx(acc["id"], "Продукты", 0.2, "expense")
        self.assertEqual(self._balance(acc["id"]), 0)

    def test_deleting_spent_income_is_rejected(self):
        acc = self._create_account("Cash", 0)
        income = self._add_tx(acc["id"], "Зарплата", 100, "income")["item"]
        self._add_tx(acc["id"], "Продукты", 80, "expense")

        res = self.client.delete(f"/api/transactions/{income['id']}", headers=self.headers)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["detail"], "Insufficient balance")
        self.assertEqual(self._balance(acc["id"]), 20)
        self.assertEqual(self.client.get(f"/api/transactions/{income['id']}", headers=self.headers).status_code, 200)

    def test_shrinking_spent_income_is_rejected(self):
        acc = self._create_account("Cash", 0)
        income = self._add_tx(acc["id"], "Зарплата", 100, "income")["item"]
        self._add_tx(acc["id"], "Продукты", 80, "expense")

        res = self.client.put(f"/api/transactions/{income['id']}", json={"amount": 50}, headers=self.headers)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(self._balance(acc["id"]), 20)

        res = self.client.put(f"/api/transactions/{income['id']}", json={"amount": 80}, headers=self.headers)
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(self._balance(acc["id"]), 0)

    def test_moving_spent_income_to_other_account_is_rejected(self):
        cash = self._create_account("Cash", 0)
        card = self._create_account("Card", 0)
        income = self._add_tx(cash["id"], "Зарплата", 100, "income")["item"]
        self._add_tx(cash["id"], "Продукты", 80, "expense")

        res = self.client.put(
            f"/api/transactions/{income['id']}", json={"account_id": card["id"]}, headers=self.headers
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(self._balance(cash["id"]), 20)
        self.assertEqual(self._balance(card["id"]), 0)

    def test_category_type_must_match(self):
        acc = self._create_account("Cash", 10)
        data = self._add_tx(acc["id"], "Продукты", 1, "income", expected=400)
        self.assertIn("does not match", data["detail"])

    def test_inactive_account_is_rejected(self):
        acc = self._create_account("Cash", 10)
        self.client.put(f"/api/accounts/{acc['id']}", json={"is_active": False}, headers=self.headers)
        data = self._add_tx(acc["id"], "Зарплата", 1, "income", expected=400)
        self.assertEqual(data["detail"], "Cannot create transaction for inactive account")

    def test_non_positive_amount_fails_validation(self):
        acc = self._create_account("Cash", 10)
        self._add_tx(acc["id"], "Зарплата", 0, "income", expected=422)

    def test_update_reapplies_balance(self):
        acc = self._create_account("Cash", 100)
        tx = self._add_tx(acc["id"], "Продукты", 40, "expense")["item"]
        self.assertEqual(self._balance(acc["id"]), 60)

        res = self.client.put(f"/api/transactions/{tx['id']}", json={"amount": 100}, headers=self.headers)
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(self._balance(acc["id"]), 0)

        res = self.client.put(f"/api/transactions/{tx['id']}", json={"amount": 101}, headers=self.headers)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(self._balance(acc["id"]), 0)

    def test_update_moves_amount_between_accounts(self):
        cash = self._create_account("Cash", 0)
        card = self._create_account("Card", 0)
        tx = self._add_tx(cash["id"], "Зарплата", 70, "income")["item"]

        res = self.client.put(f"/api/transactions/{tx['id']}", json={"account_id": card["id"]}, headers=self.headers)
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(self._balance(cash["id"]), 0)
        self.assertEqual(self._balance(card["id"]), 70)

    def test_delete_reverts_balance(self):
        acc = self._create_account("Cash", 100)
        tx = self._add_tx(acc["id"], "Продукты", 25, "expense")["item"]
        res = self.client.delete(f"/api/transactions/{tx['id']}", headers=self.headers)
        self.assertEqual(res.json(), {"ok": True})
        self.assertEqual(self._balance(acc["id"]), 100)
        self.assertEqual(self.client.get(f"/api/transactions/{tx['id']}", headers=self.headers).status_code, 404)

    def test_filters(self):
        acc = self._create_account("Cash", 1000)
        self._add_tx(acc["id"], "Зарплата", 500, "income", description="Salary", date="2024-01-10T10:00:00Z")
        self._add_tx(acc["id"], "Продукты", 20, "expense", description="Bread and milk", date="2024-02-01T09:00:00")
        self._add_tx(acc["id"], "Транспорт", 5, "expense", description="Bus", date="2024-03-05T08:00:00+03:00")

        def names(query):
            res = self.client.get(f"/api/transactions{query}", headers=self.headers)
            self.assertEqual(res.status_code, 200, res.text)
            return [t["description"] for t in res.json()["items"]]

        self.assertEqual(names(""), ["Bus", "Bread and milk", "Salary"])
        self.assertEqual(names("?type=expense"), ["Bus", "Bread and milk"])
        self.assertEqual(names("?search=MILK"), ["Bread and milk"])
        self.assertEqual(names("?date_from=2024-02-01T00:00:00Z"), ["Bus", "Bread and milk"])
        self.assertEqual(names("?date_to=2024-01-31T23:59:59Z"), ["Salary"])
        self.assertEqual(names("?min_amount=10&max_amount=100"), ["Bread and milk"])
        self.assertEqual(self.client.get("/api/transactions?type=transfer", headers=self.headers).status_code, 400)

    def test_dates_are_stored_in_utc(self):
        acc = self._create_account("Cash", 10)
        tx = self._add_tx(acc["id"], "Зарплата", 1, "income", date="2024-03-05T08:00:00+03:00")["item"]
        self.assertEqual(tx["date"], "2024-03-05T05:00:00+00:00")
        self._add_tx(acc["id"], "Зарплата", 1, "income", date="not a date", expected=400)

    def test_users_are_isolated(self):
        acc = self._create_account("Cash", 100)
        tx = self._add_tx(acc["id"], "Продукты", 10, "expense")["item"]

        other = self._login(222)
        self.assertEqual(self.client.get("/api/accounts", headers=other).json()["items"], [])
        self.assertEqual(self.client.get("/api/transactions", headers=other).json()["items"], [])
        self.assertEqual(self.client.get(f"/api/accounts/{acc['id']}", headers=other).status_code, 404)
        self.assertEqual(self.client.get(f"/api/transactions/{tx['id']}", headers=other).status_code, 404)
        self.assertEqual(self.client.delete(f"/api/transactions/{tx['id']}", headers=other).status_code, 404)

        res = self.client.post(
            "/api/transactions",
            json={"account_id": acc["id"], "category_id": self._category_id("Зарплата"), "amount": 1, "type": "income"},
            headers=other,
        )
        self.assertEqual(res.status_code, 404)
        self.assertEqual(self._balance(acc["id"]), 90)

        # same account name is fine for another user
        self._create_account("Cash", 0, headers=other)


if __name__ == "__main__":
    unittest.main()

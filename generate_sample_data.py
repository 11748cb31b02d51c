import json
import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from budget_offline import create_app


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        db.execute(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            ("demo", generate_password_hash("demo123")),
        )
        user_id = db.execute("SELECT id FROM users WHERE username = 'demo'").fetchone()["id"]

        accounts = [("Checking", "checking", "#3B82F6"), ("Savings", "savings", "#10B981"), ("Wallet", "cash", "#F59E0B")]
        for sort_order, (name, account_type, color) in enumerate(accounts):
            db.execute(
                "INSERT INTO accounts (user_id, name, type, color, sort_order) VALUES (?, ?, ?, ?, ?)",
                (user_id, name, account_type, color, sort_order),
            )
        account_ids = [row["id"] for row in db.execute("SELECT id FROM accounts WHERE user_id = ?", (user_id,)).fetchall()]

        groups = {"Bills": ["Housing", "Utilities"], "Everyday": ["Food", "Transport", "Entertainment"], "Income": ["Salary"]}
        for sort_order, (group_name, category_names) in enumerate(groups.items(), start=1):
            group_id = db.execute(
                "INSERT INTO category_groups (user_id, name, sort_order) VALUES (?, ?, ?)",
                (user_id, group_name, sort_order),
            ).lastrowid
            category_type = "income" if group_name == "Income" else "expense"
            for name in category_names:
                db.execute(
                    "INSERT INTO categories (user_id, name, type, group_id) VALUES (?, ?, ?, ?)",
                    (user_id, name, category_type, group_id),
                )

        expense_ids = [
            row["id"]
            for row in db.execute("SELECT id FROM categories WHERE user_id = ? AND type = 'expense'", (user_id,)).fetchall()
        ]
        salary_id = db.execute("SELECT id FROM categories WHERE user_id = ? AND type = 'income'", (user_id,)).fetchone()["id"]
        payees = ["Corner Market", "City Transit", "Power Co", "Cinema 8", "Landlord"]

        start = date.today() - timedelta(days=90)
        for i in range(40):
            is_income = i % 10 == 0
            amount = round(random.uniform(1500, 2500), 2) if is_income else -round(random.uniform(5, 200), 2)
            account_id = account_ids[0] if is_income else random.choice(account_ids)
            payee = "Employer" if is_income else random.choice(payees)
            db.execute(
                """
                INSERT INTO transactions (user_id, account_id, category_id, amount, description, date, payee, tags)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    account_id,
                    salary_id if is_income else random.choice(expense_ids),
                    amount,
                    f"Sample transaction {i + 1}",
                    (start + timedelta(days=i * 2)).isoformat(),
                    payee,
                    json.dumps(["sample"]),
                ),
            )
            db.execute("UPDATE accounts SET balance = balance + ? WHERE id = ?", (amount, account_id))
            db.execute(
                """
                INSERT INTO payees (user_id, name, use_count) VALUES (?, ?, 1)
                ON CONFLICT(user_id, name) DO UPDATE SET use_count = use_count + 1
                """,
                (user_id, payee),
            )

        db.commit()
    print("Sample data generated. Login with demo / demo123")


if __name__ == "__main__":
    main()

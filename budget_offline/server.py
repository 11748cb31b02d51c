import json
import os
import re
import sqlite3
from datetime import date, datetime
from functools import wraps

from flask import Flask, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from .db import connect_db, parse_database_config
from .migrations import apply_migrations, get_db_health

API_VERSION = "1.0.0"

ACCOUNT_TYPES = {"checking", "savings", "credit_card", "cash", "investment", "other"}
CATEGORY_TYPES = {"expense", "income"}
CLEARED_STATUSES = {"cleared", "uncleared", "reconciled"}
HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
TRANSACTION_FIELDS = (
    "account_id",
    "category_id",
    "amount",
    "description",
    "date",
    "payee",
    "memo",
    "flag",
    "cleared",
    "notes",
    "tags",
)


class DatabaseInitError(RuntimeError):
    """Raised when the SQLite database cannot be initialized."""


class ApiError(Exception):
    def __init__(self, status, message):
        super().__init__(message)
        self.status = status
        self.message = message


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional_text(payload, field):
    value = payload.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ApiError(400, f"{field} must be a string")
    return value.strip() or None


def validate_account(payload):
    name = (payload.get("name") or "").strip() if isinstance(payload.get("name"), str) else ""
    if not name:
        raise ApiError(400, "Account name is required")
    account_type = payload.get("type", "checking")
    if account_type not in ACCOUNT_TYPES:
        raise ApiError(400, f"Account type must be one of: {', '.join(sorted(ACCOUNT_TYPES))}")
    balance = payload.get("balance", 0)
    if not _is_number(balance):
        raise ApiError(400, "Balance must be a number")
    color = payload.get("color") or "#3B82F6"
    if not HEX_COLOR_RE.match(color):
        raise ApiError(400, "Invalid hex color")
    return {
        "name": name,
        "type": account_type,
        "balance": float(balance),
        "currency": (payload.get("currency") or "USD").strip().upper(),
        "color": color,
        "icon": _optional_text(payload, "icon"),
    }


def validate_category(payload):
    name = (payload.get("name") or "").strip() if isinstance(payload.get("name"), str) else ""
    if not name:
        raise ApiError(400, "Category name is required")
    category_type = payload.get("type", "expense")
    if category_type not in CATEGORY_TYPES:
        raise ApiError(400, "Category type must be 'expense' or 'income'")
    color = payload.get("color") or "#6B7280"
    if not HEX_COLOR_RE.match(color):
        raise ApiError(400, "Invalid hex color")
    group_id = payload.get("group_id")
    if group_id is not None and (not _is_int(group_id) or group_id <= 0):
        raise ApiError(400, "group_id must be a positive integer")
    return {
        "name": name,
        "type": category_type,
        "color": color,
        "icon": _optional_text(payload, "icon"),
        "group_id": group_id,
        "is_hidden": bool(payload.get("is_hidden", False)),
    }


def validate_transaction(payload):
    account_id = payload.get("account_id")
    if not _is_int(account_id) or account_id <= 0:
        raise ApiError(400, "account_id must be a positive integer")
    category_id = payload.get("category_id")
    if category_id is not None and (not _is_int(category_id) or category_id <= 0):
        raise ApiError(400, "category_id must be a positive integer")
    amount = payload.get("amount")
    if not _is_number(amount):
        raise ApiError(400, "Amount must be a number")
    description = payload.get("description")
    if not isinstance(description, str) or not description.strip():
        raise ApiError(400, "Description is required")
    raw_date = payload.get("date")
    try:
        datetime.strptime(raw_date or "", "%Y-%m-%d")
    except (TypeError, ValueError):
        raise ApiError(400, "Date must be YYYY-MM-DD") from None
    cleared = payload.get("cleared") or "uncleared"
    if cleared not in CLEARED_STATUSES:
        raise ApiError(400, f"cleared must be one of: {', '.join(sorted(CLEARED_STATUSES))}")
    tags = payload.get("tags")
    if tags is not None and (not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags)):
        raise ApiError(400, "tags must be a list of strings")
    return {
        "account_id": account_id,
        "category_id": category_id,
        "amount": float(amount),
        "description": description.strip(),
        "date": raw_date,
        "payee": _optional_text(payload, "payee"),
        "memo": _optional_text(payload, "memo"),
        "flag": _optional_text(payload, "flag"),
        "cleared": cleared,
        "notes": _optional_text(payload, "notes"),
        "tags": tags,
    }


def serialize_account(row):
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "type": row["type"],
        "balance": row["balance"],
        "currency": row["currency"],
        "color": row["color"],
        "icon": row["icon"],
        "is_active": row["is_active"] == 1,
        "sort_order": row["sort_order"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def serialize_category(row):
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "type": row["type"],
        "color": row["color"],
        "icon": row["icon"],
        "group_id": row["group_id"],
        "group_name": row["group_name"],
        "is_active": row["is_active"] == 1,
        "is_hidden": row["is_hidden"] == 1,
        "created_at": row["created_at"],
    }


def serialize_transaction(row):
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "account_id": row["account_id"],
        "category_id": row["category_id"],
        "amount": row["amount"],
        "description": row["description"],
        "date": row["date"],
        "payee": row["payee"],
        "memo": row["memo"],
        "flag": row["flag"],
        "cleared": row["cleared"],
        "notes": row["notes"],
        "tags": json.loads(row["tags"]) if row["tags"] else [],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "account_name": row["account_name"],
        "category_name": row["category_name"],
        "category_color": row["category_color"],
    }


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.environ.get("DATABASE_PATH") or os.path.join(app.instance_path, "budget.sqlite"),
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(parse_database_config(app.config["DATABASE"]))
            except (sqlite3.Error, OSError) as exc:
                message = f"Unable to open SQLite database at {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(app.config["DATABASE"], schema="server")
            app.config["DB_INIT_ERROR"] = None
        except (sqlite3.Error, OSError, RuntimeError) as exc:
            message = f"Failed to initialize SQLite database at {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.errorhandler(ApiError)
    def handle_api_error(exc):
        return jsonify({"error": exc.message}), exc.status

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(app.config["DATABASE"], schema="server"))
        except sqlite3.Error as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500

        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT id, username FROM users WHERE id = ?", (user_id,)).fetchone()

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"error": "Authentication required"}), 401
            return view(**kwargs)

        return wrapped_view

    def json_body():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ApiError(400, "Request body must be a JSON object")
        return payload

    def verify_ownership(table, row_id, label):
        row = get_db().execute(
            f"SELECT id FROM {table} WHERE id = ? AND user_id = ?",
            (row_id, g.user["id"]),
        ).fetchone()
        if row is None:
            raise ApiError(404, f"{label} not found")

    def record_payee(db, values):
        name = values["payee"] or values["description"]
        db.execute(
            """
            INSERT INTO payees (user_id, name, use_count) VALUES (?, ?, 1)
            ON CONFLICT(user_id, name) DO UPDATE SET use_count = use_count + 1
            """,
            (g.user["id"], name),
        )

    def get_user_transaction(transaction_id):
        row = get_db().execute(
            """
            SELECT t.*, a.name AS account_name, c.name AS category_name, c.color AS category_color
            FROM transactions t
            LEFT JOIN accounts a ON t.account_id = a.id
            LEFT JOIN categories c ON t.category_id = c.id
            WHERE t.id = ? AND t.user_id = ?
            """,
            (transaction_id, g.user["id"]),
        ).fetchone()
        if row is None:
            raise ApiError(404, "Transaction not found")
        return row

    @app.get("/api/status")
    def status():
        return jsonify({"ok": True, "version": API_VERSION})

    @app.post("/api/auth/register")
    def register():
        payload = json_body()
        username = (payload.get("username") or "").strip()
        password = payload.get("password") or ""
        if not username:
            raise ApiError(400, "Username is required.")
        if not password:
            raise ApiError(400, "Password is required.")

        db = get_db()
        try:
            cursor = db.execute(
                "INSERT INTO users (username, password_hash) VALUES (?, ?)",
                (username, generate_password_hash(password)),
            )
            db.commit()
        except sqlite3.IntegrityError:
            raise ApiError(409, "User already exists.") from None
        app.logger.info("Registered user_id=%s", cursor.lastrowid)
        return jsonify({"id": cursor.lastrowid, "username": username}), 201

    @app.post("/api/auth/login")
    def login():
        payload = json_body()
        username = (payload.get("username") or "").strip()
        password = payload.get("password") or ""
        user = get_db().execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        if user is None or not check_password_hash(user["password_hash"], password):
            raise ApiError(401, "Incorrect username or password.")

        session.clear()
        session["user_id"] = user["id"]
        return jsonify({"id": user["id"], "username": user["username"]})

    @app.post("/api/auth/logout")
    def logout():
        session.clear()
        return jsonify({"message": "Logged out"})

    @app.get("/api/accounts")
    @login_required
    def list_accounts():
        include_inactive = request.args.get("includeInactive", "").lower() == "true"
        sql = "SELECT * FROM accounts WHERE user_id = ?"
        if not include_inactive:
            sql += " AND is_active = 1"
        rows = get_db().execute(sql + " ORDER BY sort_order ASC, name ASC", (g.user["id"],)).fetchall()
        return jsonify({"accounts": [serialize_account(row) for row in rows]})

    @app.post("/api/accounts")
    @login_required
    def create_account():
        values = validate_account(json_body())
        db = get_db()
        try:
            cursor = db.execute(
                """
                INSERT INTO accounts (user_id, name, type, balance, currency, color, icon)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    g.user["id"],
                    values["name"],
                    values["type"],
                    values["balance"],
                    values["currency"],
                    values["color"],
                    values["icon"],
                ),
            )
            db.commit()
        except sqlite3.IntegrityError:
            raise ApiError(409, "Account with this name already exists") from None
        return jsonify({"id": cursor.lastrowid, "message": "Account created"}), 201

    @app.delete("/api/accounts/<int:account_id>")
    @login_required
    def deactivate_account(account_id):
        verify_ownership("accounts", account_id, "Account")
        db = get_db()
        db.execute(
            "UPDATE accounts SET is_active = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ? AND user_id = ?",
            (account_id, g.user["id"]),
        )
        db.commit()
        return jsonify({"message": "Account deleted"})

    @app.get("/api/category-groups")
    @login_required
    def list_category_groups():
        rows = get_db().execute(
            "SELECT * FROM category_groups WHERE user_id = ? ORDER BY sort_order ASC, name ASC",
            (g.user["id"],),
        ).fetchall()
        groups = [
            {
                "id": row["id"],
                "user_id": row["user_id"],
                "name": row["name"],
                "sort_order": row["sort_order"] or 0,
                "created_at": row["created_at"],
            }
            for row in rows
        ]
        return jsonify({"groups": groups})

    @app.post("/api/category-groups")
    @login_required
    def create_category_group():
        payload = json_body()
        name = payload.get("name").strip() if isinstance(payload.get("name"), str) else ""
        if not name:
            raise ApiError(400, "Group name is required")

        db = get_db()
        row = db.execute(
            "SELECT MAX(sort_order) AS max_order FROM category_groups WHERE user_id = ?",
            (g.user["id"],),
        ).fetchone()
        sort_order = (row["max_order"] or 0) + 1
        try:
            cursor = db.execute(
                "INSERT INTO category_groups (user_id, name, sort_order) VALUES (?, ?, ?)",
                (g.user["id"], name, sort_order),
            )
            db.commit()
        except sqlite3.IntegrityError:
            raise ApiError(409, "A group with this name already exists") from None
        return jsonify({"id": cursor.lastrowid, "message": "Group created"}), 201

    @app.get("/api/categories")
    @login_required
    def list_categories():
        rows = get_db().execute(
            """
            SELECT c.*, cg.name AS group_name
            FROM categories c
            LEFT JOIN category_groups cg ON c.group_id = cg.id
            WHERE c.user_id = ? AND c.is_active = 1
            ORDER BY cg.sort_order ASC, c.name ASC
            """,
            (g.user["id"],),
        ).fetchall()
        return jsonify({"categories": [serialize_category(row) for row in rows]})

    @app.post("/api/categories")
    @login_required
    def create_category():
        values = validate_category(json_body())
        if values["group_id"] is not None:
            verify_ownership("category_groups", values["group_id"], "Category group")

        db = get_db()
        try:
            cursor = db.execute(
                """
                INSERT INTO categories (user_id, name, type, color, icon, group_id, is_hidden)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    g.user["id"],
                    values["name"],
                    values["type"],
                    values["color"],
                    values["icon"],
                    values["group_id"],
                    int(values["is_hidden"]),
                ),
            )
            db.commit()
        except sqlite3.IntegrityError:
            raise ApiError(409, "Category with this name already exists") from None
        return jsonify({"id": cursor.lastrowid, "message": "Category created"}), 201

    @app.get("/api/payees")
    @login_required
    def list_payees():
        sql = "SELECT id, name, use_count FROM payees WHERE user_id = ?"
        args = [g.user["id"]]
        search = request.args.get("search", "").strip()
        if search:
            sql += " AND LOWER(name) LIKE LOWER(?)"
            args.append(f"%{search}%")
        rows = get_db().execute(sql + " ORDER BY use_count DESC, name ASC LIMIT 100", args).fetchall()
        return jsonify({"payees": [{"id": row["id"], "name": row["name"], "use_count": row["use_count"]} for row in rows]})

    @app.get("/api/transactions")
    @login_required
    def list_transactions():
        where = "t.user_id = ?"
        args = [g.user["id"]]
        for param, column in (("accountId", "t.account_id"), ("categoryId", "t.category_id")):
            raw = request.args.get(param)
            if raw:
                try:
                    args.append(int(raw))
                except ValueError:
                    raise ApiError(400, f"{param} must be an integer") from None
                where += f" AND {column} = ?"
        for param, op in (("startDate", ">="), ("endDate", "<=")):
            raw = request.args.get(param)
            if raw:
                where += f" AND t.date {op} ?"
                args.append(raw)

        db = get_db()
        total = db.execute(f"SELECT COUNT(*) FROM transactions t WHERE {where}", args).fetchone()[0]
        sql = f"""
            SELECT t.*, a.name AS account_name, c.name AS category_name, c.color AS category_color
            FROM transactions t
            LEFT JOIN accounts a ON t.account_id = a.id
            LEFT JOIN categories c ON t.category_id = c.id
            WHERE {where}
            ORDER BY t.date DESC, t.id DESC
        """
        limit = request.args.get("limit", type=int)
        offset = request.args.get("offset", default=0, type=int)
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            args = [*args, limit, offset]
        rows = db.execute(sql, args).fetchall()
        return jsonify({
            "transactions": [serialize_transaction(row) for row in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        })

    @app.post("/api/transactions")
    @login_required
    def create_transaction():
        values = validate_transaction(json_body())
        verify_ownership("accounts", values["account_id"], "Account")
        if values["category_id"] is not None:
            verify_ownership("categories", values["category_id"], "Category")

        db = get_db()
        with db:
            cursor = db.execute(
                """
                INSERT INTO transactions
                    (user_id, account_id, category_id, amount, description, date, payee, memo, flag, cleared, notes, tags)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    g.user["id"],
                    *[values[field] for field in TRANSACTION_FIELDS[:-1]],
                    json.dumps(values["tags"]) if values["tags"] is not None else None,
                ),
            )
            db.execute(
                "UPDATE accounts SET balance = balance + ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (values["amount"], values["account_id"]),
            )
            record_payee(db, values)
        app.logger.info("Created transaction_id=%s user_id=%s", cursor.lastrowid, g.user["id"])
        return jsonify({"id": cursor.lastrowid, "message": "Transaction created"}), 201

    @app.route("/api/transactions/<int:transaction_id>", methods=("PUT", "PATCH"))
    @login_required
    def update_transaction(transaction_id):
        existing = get_user_transaction(transaction_id)
        merged = {field: existing[field] for field in TRANSACTION_FIELDS}
        merged["tags"] = json.loads(existing["tags"]) if existing["tags"] else None
        merged.update({key: value for key, value in json_body().items() if key in TRANSACTION_FIELDS})
        values = validate_transaction(merged)
        verify_ownership("accounts", values["account_id"], "Account")
        if values["category_id"] is not None:
            verify_ownership("categories", values["category_id"], "Category")

        db = get_db()
        with db:
            db.execute(
                "UPDATE accounts SET balance = balance - ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (existing["amount"], existing["account_id"]),
            )
            db.execute(
                """
                UPDATE transactions
                SET account_id = ?, category_id = ?, amount = ?, description = ?, date = ?,
                    payee = ?, memo = ?, flag = ?, cleared = ?, notes = ?, tags = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND user_id = ?
                """,
                (
                    *[values[field] for field in TRANSACTION_FIELDS[:-1]],
                    json.dumps(values["tags"]) if values["tags"] is not None else None,
                    transaction_id,
                    g.user["id"],
                ),
            )
            db.execute(
                "UPDATE accounts SET balance = balance + ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (values["amount"], values["account_id"]),
            )
        return jsonify({"message": "Transaction updated"})

    @app.delete("/api/transactions/<int:transaction_id>")
    @login_required
    def delete_transaction(transaction_id):
        existing = get_user_transaction(transaction_id)
        db = get_db()
        with db:
            db.execute("DELETE FROM transactions WHERE id = ? AND user_id = ?", (transaction_id, g.user["id"]))
            db.execute(
                "UPDATE accounts SET balance = balance - ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (existing["amount"], existing["account_id"]),
            )
        app.logger.info("Deleted transaction_id=%s user_id=%s", transaction_id, g.user["id"])
        return jsonify({"message": "Transaction deleted"})

    @app.get("/api/dashboard")
    @login_required
    def dashboard():
        db = get_db()
        user_id = g.user["id"]
        month_start = date.today().replace(day=1).isoformat()
        total_balance = db.execute(
            "SELECT COALESCE(SUM(balance), 0) FROM accounts WHERE user_id = ? AND is_active = 1",
            (user_id,),
        ).fetchone()[0]
        monthly_income = db.execute(
            "SELECT COALESCE(SUM(amount), 0) FROM transactions WHERE user_id = ? AND amount > 0 AND date >= ?",
            (user_id, month_start),
        ).fetchone()[0]
        monthly_expenses = db.execute(
            "SELECT COALESCE(ABS(SUM(amount)), 0) FROM transactions WHERE user_id = ? AND amount < 0 AND date >= ?",
            (user_id, month_start),
        ).fetchone()[0]
        accounts_count = db.execute(
            "SELECT COUNT(*) FROM accounts WHERE user_id = ? AND is_active = 1",
            (user_id,),
        ).fetchone()[0]
        return jsonify({
            "totalBalance": total_balance,
            "monthlyIncome": monthly_income,
            "monthlyExpenses": monthly_expenses,
            "accountsCount": accounts_count,
        })

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app

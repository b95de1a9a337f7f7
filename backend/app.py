import os
import re
import secrets
from datetime import timedelta
from typing import Dict, List, Optional

from bson import ObjectId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .auth import (
    ALLOWED_GENDERS,
    ALLOWED_USER_ROLES,
    ALLOWED_USER_STATUSES,
    admin_required,
    current_identity,
    filter_mutable_fields,
    hash_password,
    issue_token,
    login_required,
    optional_identity,
    verify_password,
)
from .catalog import (
    ATTRIBUTE_TYPES,
    as_value_list,
    build_product_document,
    resolve_exact_variant,
    resolve_variants,
    serialize_product,
)
from .database import (
    ensure_indexes,
    init_database,
    normalize_object_id_value,
    parse_object_id,
    serialize_document,
    utcnow,
)
from .errors import (
    ConflictError,
    Forbidden,
    NotFound,
    Unauthenticated,
    ValidationError,
    register_error_handlers,
)
from .notifier import EmailNotifier
from .orders import (
    PaymentStatus,
    apply_payment_failed,
    apply_payment_succeeded,
    build_order_document,
    build_order_update,
    check_intent_amount,
    minor_units,
    money,
    to_decimal,
)
from .payments import StripeClient
from .reporting import (
    monthly_orders_sales,
    orders_by_status,
    products_by_category,
    summary,
)

load_dotenv()

HIDDEN_USER_FIELDS = (
    "password",
    "emailVerificationToken",
    "emailVerificationExpires",
    "passwordResetToken",
    "passwordResetExpires",
)


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        return int(raw_value)
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        return float(raw_value)
    except (TypeError, ValueError):
        return default


def load_config(app: Flask, config_overrides: Optional[Dict] = None) -> None:
    app.config.update(
        MONGO_URI=os.getenv("MONGO_URI", "mongodb://localhost:27017/gracestore"),
        JWT_SECRET_KEY=(os.getenv("JWT_SECRET_KEY") or "").strip(),
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=7),
        BCRYPT_ROUNDS=_env_int("BCRYPT_ROUNDS", 12),
        STRIPE_SECRET_KEY=(os.getenv("STRIPE_SECRET_KEY") or "").strip(),
        STRIPE_WEBHOOK_SECRET=(os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip(),
        STRIPE_API_BASE=os.getenv("STRIPE_API_BASE", "https://api.stripe.com"),
        PAYMENT_CURRENCY=(os.getenv("PAYMENT_CURRENCY") or "pkr").strip().lower(),
        PAYMENT_PROVIDER_TIMEOUT=_env_float("PAYMENT_PROVIDER_TIMEOUT", 10.0),
        PAYMENT_PROVIDER_MAX_RETRIES=_env_int("PAYMENT_PROVIDER_MAX_RETRIES", 3),
        RESEND_API_KEY=(os.getenv("RESEND_API_KEY") or "").strip(),
        EMAIL_SENDER=(os.getenv("EMAIL_SENDER") or "").strip(),
        FRONTEND_URL=(os.getenv("FRONTEND_URL") or "http://localhost:5173").strip(),
        EMAIL_MAX_ATTEMPTS=_env_int("EMAIL_MAX_ATTEMPTS", 3),
        EMAIL_RETRY_BACKOFF=_env_float("EMAIL_RETRY_BACKOFF", 0.5),
        EMAIL_VERIFICATION_HOURS=_env_int("EMAIL_VERIFICATION_HOURS", 24),
        PASSWORD_RESET_HOURS=_env_int("PASSWORD_RESET_HOURS", 1),
    )
    app.config.update(config_overrides or {})

    if not app.config["JWT_SECRET_KEY"]:
        # Tokens signed with a generated key stop validating after a restart.
        app.logger.warning("JWT_SECRET_KEY is not set; using a random per-process key.")
        app.config["JWT_SECRET_KEY"] = secrets.token_hex(32)


def create_app(
    config_overrides: Optional[Dict] = None, database: Optional[Database] = None
) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # --- Configuration ---
    load_config(app, config_overrides)

    # --- Initialize extensions ---
    db = init_database(app, database)
    ensure_indexes(app, db)
    register_error_handlers(app)

    app.extensions["payment_provider"] = StripeClient(
        app.config["STRIPE_SECRET_KEY"],
        webhook_secret=app.config["STRIPE_WEBHOOK_SECRET"],
        api_base=app.config["STRIPE_API_BASE"],
        timeout=app.config["PAYMENT_PROVIDER_TIMEOUT"],
        max_retries=app.config["PAYMENT_PROVIDER_MAX_RETRIES"],
        logger=app.logger,
    )
    app.extensions["email_notifier"] = EmailNotifier(
        app.config["RESEND_API_KEY"],
        app.config["EMAIL_SENDER"],
        frontend_url=app.config["FRONTEND_URL"],
        max_attempts=app.config["EMAIL_MAX_ATTEMPTS"],
        backoff=app.config["EMAIL_RETRY_BACKOFF"],
        logger=app.logger,
    )

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    def payment_provider() -> StripeClient:
        return app.extensions["payment_provider"]

    def email_notifier() -> EmailNotifier:
        return app.extensions["email_notifier"]

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def serialize_user(user_document) -> Dict:
        return serialize_document(user_document, hidden_fields=HIDDEN_USER_FIELDS)

    def validate_user_fields(fields: Dict) -> Dict:
        if "role" in fields and fields["role"] not in ALLOWED_USER_ROLES:
            raise ValidationError("Invalid role specified.")
        if "status" in fields and fields["status"] not in ALLOWED_USER_STATUSES:
            raise ValidationError("Invalid status specified.")
        if "gender" in fields and fields["gender"] not in ALLOWED_GENDERS:
            raise ValidationError("Gender must be one of: male, female, other.")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
            if not is_valid_email(fields["email"]):
                raise ValidationError("Please provide a valid email address.")
        if "isEmailVerified" in fields:
            fields["isEmailVerified"] = bool(fields["isEmailVerified"])
        for text_field in ("name", "image", "profession", "address", "phone", "bio"):
            if text_field in fields:
                fields[text_field] = str(fields[text_field]).strip()
        if "name" in fields and not fields["name"]:
            raise ValidationError("Name cannot be empty.")
        return fields

    def issue_email_token(hours: int):
        return secrets.token_hex(32), utcnow() + timedelta(hours=hours)

    def deliver(result, description: str, recipient: str) -> bool:
        sent, error_details = result
        if not sent:
            app.logger.error(
                "%s email delivery failed for %s: %s",
                description,
                recipient,
                error_details or "Unknown delivery error",
            )
        return sent

    def find_or_404(collection, identifier: str, label: str, not_found: str):
        document = collection.find_one({"_id": parse_object_id(identifier, label)})
        if not document:
            raise NotFound(not_found)
        return document

    def parse_year(value) -> int:
        if value is None or not str(value).strip():
            return utcnow().year
        try:
            year = int(value)
        except (TypeError, ValueError):
            raise ValidationError("Year must be a whole number.")
        if year < 1970 or year > 9999:
            raise ValidationError("Year is out of range.")
        return year

    def attach_order_references(order_documents: List[Dict]) -> List[Dict]:
        user_ids = {doc.get("userId") for doc in order_documents if doc.get("userId")}
        product_ids = {
            item.get("productId")
            for doc in order_documents
            for item in doc.get("items") or []
            if item.get("productId")
        }
        users = {
            user["_id"]: {"name": user.get("name"), "email": user.get("email")}
            for user in db.users.find({"_id": {"$in": list(user_ids)}}, {"name": 1, "email": 1})
        } if user_ids else {}
        products = {
            product["_id"]: {
                "name": product.get("name"),
                "image": product.get("image"),
                "prices": product.get("prices"),
            }
            for product in db.products.find(
                {"_id": {"$in": list(product_ids)}}, {"name": 1, "image": 1, "prices": 1}
            )
        } if product_ids else {}

        serialized = []
        for doc in order_documents:
            order = serialize_document(doc)
            if doc.get("userId") in users:
                order["user"] = users[doc["userId"]]
            for item, original in zip(order.get("items") or [], doc.get("items") or []):
                product = products.get(original.get("productId"))
                if product:
                    item["product"] = product
            serialized.append(order)
        return serialized

    # --- Health ---
    @app.route("/health")
    @app.route("/api/health")
    def health():
        return {"status": "ok"}, 200

    # --- Users ---
    @app.route("/api/users/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        name = str(payload.get("name", "")).strip()
        password = str(payload.get("password", ""))

        if not email or not name or not password:
            raise ValidationError("Name, email, and password are required.")
        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")
        if db.users.find_one({"email": email}):
            raise ConflictError("User with this email already exists.")

        verification_token, verification_expires = issue_email_token(
            app.config["EMAIL_VERIFICATION_HOURS"]
        )
        user_document = {
            "name": name,
            "email": email,
            "password": hash_password(password),
            "image": str(payload.get("image") or "").strip(),
            "role": "user",
            "status": "Active",
            "isEmailVerified": False,
            "emailVerificationToken": verification_token,
            "emailVerificationExpires": verification_expires,
            "createdAt": utcnow(),
        }
        insert_result = db.users.insert_one(user_document)
        user_document["_id"] = insert_result.inserted_id

        notifier = email_notifier()
        deliver(notifier.send_welcome(email, name), "Welcome", email)
        deliver(
            notifier.send_verification(
                email, verification_token, app.config["EMAIL_VERIFICATION_HOURS"]
            ),
            "Verification",
            email,
        )

        app.logger.info("Registered user %s", insert_result.inserted_id)
        return (
            jsonify(
                {
                    "message": "User registered successfully. Please check your email for verification.",
                    "user": serialize_user(user_document),
                    "token": issue_token(insert_result.inserted_id),
                }
            ),
            201,
        )

    @app.route("/api/users/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            raise ValidationError("Email and password are required.")

        user = db.users.find_one({"email": email})
        if not user or not verify_password(password, user.get("password")):
            raise Unauthenticated("invalid_credentials", "Invalid credentials.")
        if user.get("status", "Active") != "Active":
            raise Forbidden("This account is inactive.")

        return jsonify(
            {
                "message": "Login successful.",
                "user": serialize_user(user),
                "token": issue_token(user["_id"]),
            }
        )

    @app.route("/api/users/verify-email", methods=["GET"])
    def verify_email():
        token = str(request.args.get("token") or "").strip()
        if not token:
            raise ValidationError("Verification token is required.")

        user = db.users.find_one_and_update(
            {"emailVerificationToken": token, "emailVerificationExpires": {"$gt": utcnow()}},
            {
                "$set": {"isEmailVerified": True},
                "$unset": {"emailVerificationToken": "", "emailVerificationExpires": ""},
            },
        )
        if not user:
            raise ValidationError("Invalid or expired verification token.")

        app.logger.info("Verified email for user %s", user["_id"])
        return jsonify({"message": "Email verified successfully."})

    @app.route("/api/users/resend-verification", methods=["POST"])
    def resend_verification():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        if not email:
            raise ValidationError("Email is required.")

        user = db.users.find_one({"email": email})
        if not user:
            raise NotFound("User not found.")
        if user.get("isEmailVerified"):
            raise ValidationError("Email is already verified.")

        verification_token, verification_expires = issue_email_token(
            app.config["EMAIL_VERIFICATION_HOURS"]
        )
        db.users.update_one(
            {"_id": user["_id"]},
            {
                "$set": {
                    "emailVerificationToken": verification_token,
                    "emailVerificationExpires": verification_expires,
                }
            },
        )
        deliver(
            email_notifier().send_verification(
                email, verification_token, app.config["EMAIL_VERIFICATION_HOURS"]
            ),
            "Verification",
            email,
        )
        return jsonify({"message": "Verification email sent successfully."})

    @app.route("/api/users/forgot-password", methods=["POST"])
    def forgot_password():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        generic_message = {
            "message": "If this email exists, a password reset link has been sent."
        }

        if not email:
            raise ValidationError("Email is required.")
        if not is_valid_email(email):
            return jsonify(generic_message), 200

        user = db.users.find_one({"email": email})
        if user:
            reset_token, reset_expires = issue_email_token(app.config["PASSWORD_RESET_HOURS"])
            db.users.update_one(
                {"_id": user["_id"]},
                {
                    "$set": {
                        "passwordResetToken": reset_token,
                        "passwordResetExpires": reset_expires,
                    }
                },
            )
            deliver(
                email_notifier().send_password_reset(
                    email, reset_token, app.config["PASSWORD_RESET_HOURS"]
                ),
                "Password reset",
                email,
            )

        return jsonify(generic_message), 200

    @app.route("/api/users/reset-password", methods=["POST"])
    def reset_password():
        payload = request.get_json(silent=True) or {}
        token = str(payload.get("token", "")).strip()
        new_password = str(payload.get("newPassword", ""))

        if not token or not new_password:
            raise ValidationError("Token and new password are required.")

        user = db.users.find_one_and_update(
            {"passwordResetToken": token, "passwordResetExpires": {"$gt": utcnow()}},
            {
                "$set": {"password": hash_password(new_password)},
                "$unset": {"passwordResetToken": "", "passwordResetExpires": ""},
            },
        )
        if not user:
            raise ValidationError("Invalid or expired reset token.")

        app.logger.info("Password reset for user %s", user["_id"])
        return jsonify({"message": "Password reset successfully."}), 200

    @app.route("/api/users/profile", methods=["GET"])
    @login_required
    def get_profile():
        return jsonify(serialize_user(current_identity()))

    @app.route("/api/users/profile", methods=["PUT"])
    @login_required
    def update_profile():
        identity = current_identity()
        payload = request.get_json(silent=True) or {}
        updates = validate_user_fields(filter_mutable_fields(payload, "user"))
        if not updates:
            raise ValidationError("No updatable profile fields were provided.")

        updated_user = db.users.find_one_and_update(
            {"_id": identity["_id"]},
            {"$set": updates},
            projection={"password": 0},
            return_document=ReturnDocument.AFTER,
        )
        return jsonify(serialize_user(updated_user))

    @app.route("/api/users/change-password", methods=["PUT"])
    @login_required
    def change_password():
        identity = current_identity()
        payload = request.get_json(silent=True) or {}
        current_password = str(payload.get("currentPassword", ""))
        new_password = str(payload.get("newPassword", ""))

        if not current_password or not new_password:
            raise ValidationError("Current password and new password are required.")

        user = db.users.find_one({"_id": identity["_id"]})
        if not user:
            raise NotFound("User not found.")
        if not verify_password(current_password, user.get("password")):
            raise ValidationError("Current password is incorrect.")

        db.users.update_one(
            {"_id": user["_id"]}, {"$set": {"password": hash_password(new_password)}}
        )
        return jsonify({"message": "Password changed successfully."})

    @app.route("/api/users", methods=["POST"])
    @admin_required
    def create_user():
        payload = request.get_json(silent=True) or {}
        password = str(payload.get("password", ""))
        fields = validate_user_fields(filter_mutable_fields(payload, "admin"))

        if not fields.get("name") or not fields.get("email") or not password:
            raise ValidationError("Name, email, and password are required.")
        if db.users.find_one({"email": fields["email"]}):
            raise ConflictError("User with this email already exists.")

        user_document = {
            "role": "user",
            "status": "Active",
            "image": "",
            "profession": "",
            "gender": "male",
            "address": "",
            "phone": "",
            **fields,
            "password": hash_password(password),
            "isEmailVerified": True,
            "createdAt": utcnow(),
        }
        insert_result = db.users.insert_one(user_document)
        user_document["_id"] = insert_result.inserted_id

        return (
            jsonify({"message": "User created successfully.", "user": serialize_user(user_document)}),
            201,
        )

    @app.route("/api/users", methods=["GET"])
    @admin_required
    def list_users():
        users = db.users.find({}, {"password": 0}).sort("createdAt", DESCENDING)
        return jsonify({"users": [serialize_user(user) for user in users]})

    @app.route("/api/users/role/<role>", methods=["GET"])
    @admin_required
    def list_users_by_role(role: str):
        if role not in ALLOWED_USER_ROLES:
            raise ValidationError("Invalid role.")
        users = db.users.find({"role": role}, {"password": 0}).sort("createdAt", DESCENDING)
        return jsonify({"users": [serialize_user(user) for user in users]})

    @app.route("/api/users/<user_id>", methods=["GET"])
    @admin_required
    def get_user(user_id: str):
        user = find_or_404(db.users, user_id, "user ID format", "User not found.")
        return jsonify(serialize_user(user))

    @app.route("/api/users/<user_id>", methods=["PUT"])
    @admin_required
    def update_user(user_id: str):
        user_object_id = parse_object_id(user_id, "user ID format")
        payload = request.get_json(silent=True) or {}
        updates = validate_user_fields(filter_mutable_fields(payload, "admin"))
        if payload.get("password"):
            updates["password"] = hash_password(str(payload["password"]))
        if not updates:
            raise ValidationError("No updatable user fields were provided.")

        updated_user = db.users.find_one_and_update(
            {"_id": user_object_id},
            {"$set": updates},
            projection={"password": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not updated_user:
            raise NotFound("User not found.")
        return jsonify(serialize_user(updated_user))

    @app.route("/api/users/<user_id>", methods=["DELETE"])
    @admin_required
    def delete_user(user_id: str):
        deleted_user = db.users.find_one_and_delete(
            {"_id": parse_object_id(user_id, "user ID format")}
        )
        if not deleted_user:
            raise NotFound("User not found.")
        app.logger.info("Deleted user %s", deleted_user["_id"])
        return jsonify(
            {"message": "User deleted successfully.", "user": serialize_user(deleted_user)}
        )

    # --- Products ---
    @app.route("/api/products", methods=["POST"])
    @admin_required
    def create_product():
        payload = request.get_json(silent=True) or {}
        document = build_product_document(payload)
        timestamp = utcnow()
        document["createdAt"] = timestamp
        document["updatedAt"] = timestamp
        insert_result = db.products.insert_one(document)
        document["_id"] = insert_result.inserted_id
        return (
            jsonify({"message": "Product created successfully.", "product": serialize_product(document)}),
            201,
        )

    @app.route("/api/products/bulk", methods=["POST"])
    @admin_required
    def create_products_bulk():
        payload = request.get_json(silent=True)
        if not isinstance(payload, list) or not payload:
            raise ValidationError("Invalid or empty product list.")

        timestamp = utcnow()
        documents = []
        for entry in payload:
            document = build_product_document(entry)
            document["createdAt"] = timestamp
            document["updatedAt"] = timestamp
            documents.append(document)

        insert_result = db.products.insert_many(documents)
        for document, inserted_id in zip(documents, insert_result.inserted_ids):
            document["_id"] = inserted_id

        return (
            jsonify(
                {
                    "message": f"Created {len(documents)} products.",
                    "products": [serialize_product(document) for document in documents],
                }
            ),
            201,
        )

    @app.route("/api/products", methods=["GET"])
    def list_products():
        products = db.products.find().sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
        return jsonify({"products": [serialize_product(product) for product in products]})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product = find_or_404(db.products, product_id, "product ID format", "Product not found.")
        return jsonify(serialize_product(product))

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @admin_required
    def update_product(product_id: str):
        existing = find_or_404(db.products, product_id, "product ID format", "Product not found.")
        payload = request.get_json(silent=True) or {}
        updates = build_product_document(
            payload, partial=True, existing_additional=existing.get("additionalAttributes")
        )
        updates["updatedAt"] = utcnow()

        updated_product = db.products.find_one_and_update(
            {"_id": existing["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated_product:
            raise NotFound("Product not found.")
        return jsonify(serialize_product(updated_product))

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @admin_required
    def delete_product(product_id: str):
        deleted_product = db.products.find_one_and_delete(
            {"_id": parse_object_id(product_id, "product ID format")}
        )
        if not deleted_product:
            raise NotFound("Product not found.")
        return jsonify(
            {"message": "Product deleted successfully.", "product": serialize_product(deleted_product)}
        )

    @app.route("/api/products/search/name/<name>", methods=["GET"])
    def search_products_by_name(name: str):
        products = list(
            db.products.find({"name": {"$regex": re.escape(name), "$options": "i"}}).sort(
                "createdAt", DESCENDING
            )
        )
        if not products:
            raise NotFound("No products found.")
        return jsonify({"products": [serialize_product(product) for product in products]})

    @app.route("/api/products/search/category/<category>", methods=["GET"])
    @app.route("/api/products/category/<category>", methods=["GET"])
    def list_products_by_category(category: str):
        products = db.products.find({"categories": category}).sort("createdAt", DESCENDING)
        return jsonify({"products": [serialize_product(product) for product in products]})

    @app.route("/api/products/variant/<name>/<color>", methods=["GET"])
    def get_product_variant(name: str, color: str):
        return jsonify(serialize_product(resolve_exact_variant(db.products, name, color)))

    @app.route("/api/products/variants/<name>", methods=["GET"])
    def get_product_variants(name: str):
        return jsonify(resolve_variants(db.products, name))

    # --- Categories ---
    def build_category_fields(payload: Dict, partial: bool) -> Dict:
        fields: Dict = {}
        if "name" in payload or not partial:
            name = str(payload.get("name") or "").strip()
            if not name:
                raise ValidationError("Category name is required.")
            fields["name"] = name
        for text_field in ("image", "description"):
            if text_field in payload or not partial:
                fields[text_field] = str(payload.get(text_field) or "").strip()
        if "sortOrder" in payload or not partial:
            raw_sort_order = payload.get("sortOrder")
            try:
                fields["sortOrder"] = int(raw_sort_order) if raw_sort_order not in (None, "") else 0
            except (TypeError, ValueError):
                raise ValidationError("Sort order must be a whole number.")
        if "isActive" in payload:
            fields["isActive"] = bool(payload.get("isActive"))
        elif not partial:
            fields["isActive"] = True
        return fields

    @app.route("/api/categories", methods=["POST"])
    @admin_required
    def create_category():
        payload = request.get_json(silent=True) or {}
        document = build_category_fields(payload, partial=False)
        if db.categories.find_one({"name": document["name"]}):
            raise ConflictError("A category with this name already exists.")

        document["createdAt"] = utcnow()
        insert_result = db.categories.insert_one(document)
        document["_id"] = insert_result.inserted_id
        return (
            jsonify({"message": "Category created successfully.", "category": serialize_document(document)}),
            201,
        )

    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        categories = db.categories.find({"isActive": True}).sort(
            [("sortOrder", ASCENDING), ("createdAt", ASCENDING), ("_id", ASCENDING)]
        )
        return jsonify({"categories": [serialize_document(category) for category in categories]})

    @app.route("/api/categories/search/<name>", methods=["GET"])
    def search_category(name: str):
        category = db.categories.find_one({"name": {"$regex": re.escape(name), "$options": "i"}})
        if not category:
            raise NotFound("Category not found.")
        return jsonify(serialize_document(category))

    @app.route("/api/categories/<category_id>", methods=["GET"])
    def get_category(category_id: str):
        category = find_or_404(db.categories, category_id, "category ID format", "Category not found.")
        return jsonify(serialize_document(category))

    @app.route("/api/categories/<category_id>", methods=["PUT"])
    @admin_required
    def update_category(category_id: str):
        payload = request.get_json(silent=True) or {}
        updates = build_category_fields(payload, partial=True)
        if not updates:
            raise ValidationError("No updatable category fields were provided.")

        try:
            updated_category = db.categories.find_one_and_update(
                {"_id": parse_object_id(category_id, "category ID format")},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ConflictError("A category with this name already exists.")
        if not updated_category:
            raise NotFound("Category not found.")
        return jsonify(serialize_document(updated_category))

    @app.route("/api/categories/<category_id>", methods=["DELETE"])
    @admin_required
    def delete_category(category_id: str):
        deleted_category = db.categories.find_one_and_delete(
            {"_id": parse_object_id(category_id, "category ID format")}
        )
        if not deleted_category:
            raise NotFound("Category not found.")
        return jsonify(
            {"message": "Category deleted successfully.", "category": serialize_document(deleted_category)}
        )

    # --- Attributes ---
    def build_attribute_fields(payload: Dict, partial: bool) -> Dict:
        fields: Dict = {}
        if "name" in payload or not partial:
            name = str(payload.get("name") or "").strip()
            if not name:
                raise ValidationError("Attribute name is required.")
            fields["name"] = name
        if "type" in payload or not partial:
            attribute_type = str(payload.get("type") or "color").strip().lower()
            if attribute_type not in ATTRIBUTE_TYPES:
                raise ValidationError(
                    f"Attribute type must be one of: {', '.join(ATTRIBUTE_TYPES)}."
                )
            fields["type"] = attribute_type
        if "values" in payload or not partial:
            fields["values"] = as_value_list(payload.get("values"))
        if "isActive" in payload:
            fields["isActive"] = bool(payload.get("isActive"))
        elif not partial:
            fields["isActive"] = True
        return fields

    @app.route("/api/attributes", methods=["POST"])
    @admin_required
    def create_attribute():
        payload = request.get_json(silent=True) or {}
        document = build_attribute_fields(payload, partial=False)
        document["createdAt"] = utcnow()
        insert_result = db.attributes.insert_one(document)
        document["_id"] = insert_result.inserted_id
        return (
            jsonify({"message": "Attribute created successfully.", "attribute": serialize_document(document)}),
            201,
        )

    @app.route("/api/attributes", methods=["GET"])
    def list_attributes():
        attributes = db.attributes.find({"isActive": True}).sort("createdAt", ASCENDING)
        return jsonify({"attributes": [serialize_document(attribute) for attribute in attributes]})

    @app.route("/api/attributes/type/<attribute_type>", methods=["GET"])
    def list_attributes_by_type(attribute_type: str):
        attributes = db.attributes.find({"type": attribute_type, "isActive": True}).sort(
            "createdAt", ASCENDING
        )
        return jsonify({"attributes": [serialize_document(attribute) for attribute in attributes]})

    @app.route("/api/attributes/<attribute_id>", methods=["GET"])
    def get_attribute(attribute_id: str):
        attribute = find_or_404(
            db.attributes, attribute_id, "attribute ID format", "Attribute not found."
        )
        return jsonify(serialize_document(attribute))

    @app.route("/api/attributes/<attribute_id>", methods=["PUT"])
    @admin_required
    def update_attribute(attribute_id: str):
        payload = request.get_json(silent=True) or {}
        updates = build_attribute_fields(payload, partial=True)
        if not updates:
            raise ValidationError("No updatable attribute fields were provided.")

        updated_attribute = db.attributes.find_one_and_update(
            {"_id": parse_object_id(attribute_id, "attribute ID format")},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated_attribute:
            raise NotFound("Attribute not found.")
        return jsonify(serialize_document(updated_attribute))

    @app.route("/api/attributes/<attribute_id>", methods=["DELETE"])
    @admin_required
    def delete_attribute(attribute_id: str):
        deleted_attribute = db.attributes.find_one_and_delete(
            {"_id": parse_object_id(attribute_id, "attribute ID format")}
        )
        if not deleted_attribute:
            raise NotFound("Attribute not found.")
        return jsonify(
            {"message": "Attribute deleted successfully.", "attribute": serialize_document(deleted_attribute)}
        )

    # --- Orders ---
    @app.route("/api/orders/create", methods=["POST"])
    @optional_identity
    def create_order():
        identity = current_identity()
        payload = request.get_json(silent=True) or {}
        # Ownership comes from the bearer token only.
        payload = {key: value for key, value in payload.items() if key != "userId"}

        order_document = build_order_document(
            payload, user_id=identity["_id"] if identity else None
        )
        if identity and not order_document.get("email"):
            order_document["email"] = normalize_email(identity.get("email"))

        insert_result = db.orders.insert_one(order_document)
        order_document["_id"] = insert_result.inserted_id
        app.logger.info(
            "Created order %s (total %s)", insert_result.inserted_id, order_document["totalAmount"]
        )

        recipient = order_document.get("email")
        if recipient:
            deliver(
                email_notifier().send_order_confirmation(
                    recipient, order_document, currency=app.config["PAYMENT_CURRENCY"]
                ),
                "Order confirmation",
                recipient,
            )

        return (
            jsonify({"message": "Order placed successfully.", "order": serialize_document(order_document)}),
            201,
        )

    @app.route("/api/orders", methods=["POST"])
    @admin_required
    def create_order_admin():
        payload = request.get_json(silent=True) or {}
        order_document = build_order_document(payload, allow_status=True)
        insert_result = db.orders.insert_one(order_document)
        order_document["_id"] = insert_result.inserted_id
        return (
            jsonify({"message": "Order created successfully.", "order": serialize_document(order_document)}),
            201,
        )

    @app.route("/api/orders", methods=["GET"])
    @admin_required
    def list_orders():
        orders = list(db.orders.find().sort([("createdAt", DESCENDING), ("_id", DESCENDING)]))
        return jsonify({"orders": attach_order_references(orders)})

    @app.route("/api/orders/my-orders", methods=["GET"])
    @login_required
    def list_my_orders():
        identity = current_identity()
        orders = list(
            db.orders.find({"userId": identity["_id"]}).sort(
                [("createdAt", DESCENDING), ("_id", DESCENDING)]
            )
        )
        return jsonify({"orders": attach_order_references(orders)})

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @admin_required
    def get_order(order_id: str):
        order = find_or_404(db.orders, order_id, "order ID format", "Order not found.")
        return jsonify(attach_order_references([order])[0])

    @app.route("/api/orders/<order_id>", methods=["PUT"])
    @admin_required
    def update_order(order_id: str):
        existing = find_or_404(db.orders, order_id, "order ID format", "Order not found.")
        payload = request.get_json(silent=True) or {}
        updates = build_order_update(existing, payload)

        updated_order = db.orders.find_one_and_update(
            {"_id": existing["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated_order:
            raise NotFound("Order not found.")
        return jsonify(serialize_document(updated_order))

    @app.route("/api/orders/<order_id>", methods=["DELETE"])
    @admin_required
    def delete_order(order_id: str):
        deleted_order = db.orders.find_one_and_delete(
            {"_id": parse_object_id(order_id, "order ID format")}
        )
        if not deleted_order:
            raise NotFound("Order not found.")
        return jsonify(
            {"message": "Order deleted successfully.", "order": serialize_document(deleted_order)}
        )

    # --- Dashboard ---
    @app.route("/api/dashboard/monthly-orders-sales", methods=["GET"])
    @admin_required
    def dashboard_monthly_orders_sales():
        year = parse_year(request.args.get("year"))
        return jsonify({"year": year, "months": monthly_orders_sales(db.orders, year)})

    @app.route("/api/dashboard/orders-by-status", methods=["GET"])
    @admin_required
    def dashboard_orders_by_status():
        return jsonify({"statuses": orders_by_status(db.orders)})

    @app.route("/api/dashboard/products-by-category", methods=["GET"])
    @admin_required
    def dashboard_products_by_category():
        return jsonify({"categories": products_by_category(db.products)})

    @app.route("/api/dashboard/summary", methods=["GET"])
    @admin_required
    def dashboard_summary():
        return jsonify(summary(db))

    # --- Payments ---
    @app.route("/api/payments/create-payment-intent", methods=["POST"])
    def create_payment_intent():
        payload = request.get_json(silent=True) or {}
        requested = payload.get("amount")
        if requested is None and not payload.get("orderId"):
            raise ValidationError("Invalid amount.")
        amount = to_decimal(requested, "Amount") if requested is not None else None

        currency = str(payload.get("currency") or app.config["PAYMENT_CURRENCY"]).strip().lower()
        metadata: Dict[str, str] = {}
        order_object_id: Optional[ObjectId] = None
        if payload.get("orderId"):
            order = find_or_404(db.orders, payload["orderId"], "order ID format", "Order not found.")
            if order.get("paymentStatus") == PaymentStatus.PAID.value:
                raise ConflictError("Order is already paid.")
            order_total = to_decimal(order.get("totalAmount", 0), "Order total")
            # the charge always follows the stored total
            if amount is not None and minor_units(amount) != minor_units(order_total):
                raise ValidationError("Amount does not match the order total.")
            amount = order_total
            order_object_id = order["_id"]
            metadata["orderId"] = str(order_object_id)

        if amount <= 0:
            raise ValidationError("Invalid amount.")

        intent = payment_provider().create_payment_intent(money(amount), currency, metadata)
        if order_object_id:
            db.orders.update_one(
                {"_id": order_object_id},
                {"$set": {"paymentIntentId": intent.get("id"), "updatedAt": utcnow()}},
            )

        app.logger.info(
            "Created payment intent %s for %s %s", intent.get("id"), money(amount), currency
        )
        return jsonify(
            {"clientSecret": intent.get("client_secret"), "paymentIntentId": intent.get("id")}
        )

    @app.route("/api/payments/confirm-payment", methods=["POST"])
    def confirm_payment():
        payload = request.get_json(silent=True) or {}
        order_identifier = payload.get("orderId")
        payment_intent_id = str(payload.get("paymentIntentId") or "").strip()
        if not order_identifier or not payment_intent_id:
            raise ValidationError("Order ID and payment intent ID are required.")
        order_object_id = parse_object_id(order_identifier, "order ID format")

        intent = payment_provider().retrieve_payment_intent(payment_intent_id)
        if intent.get("status") != "succeeded":
            raise ValidationError("Payment not completed.")
        intent_order_id = (intent.get("metadata") or {}).get("orderId")
        if intent_order_id != str(order_object_id):
            raise ValidationError("Payment intent does not belong to this order.")
        check_intent_amount(
            find_or_404(db.orders, order_identifier, "order ID format", "Order not found."),
            intent,
        )

        order, applied = apply_payment_succeeded(
            db.orders, order_object_id, payment_intent_id, payload.get("paymentMethod")
        )
        if applied:
            app.logger.info("Order %s marked paid by %s", order_object_id, payment_intent_id)
        return jsonify(
            {
                "success": True,
                "message": "Payment confirmed successfully."
                if applied
                else "Payment was already confirmed.",
                "order": serialize_document(order),
            }
        )

    def handle_payment_event(event_type: str, intent: Dict) -> str:
        intent_id = intent.get("id")
        order_object_id = normalize_object_id_value((intent.get("metadata") or {}).get("orderId"))
        if not order_object_id:
            app.logger.warning("Webhook %s for %s has no usable orderId", event_type, intent_id)
            return "ignored"

        order = db.orders.find_one({"_id": order_object_id})
        if order is None:
            app.logger.warning("Webhook %s: order %s not found", event_type, order_object_id)
            return "ignored"

        try:
            if event_type == "payment_intent.succeeded":
                check_intent_amount(order, intent)
                _, applied = apply_payment_succeeded(db.orders, order_object_id, intent_id)
            else:
                _, applied = apply_payment_failed(db.orders, order_object_id, intent_id)
        except (ConflictError, ValidationError) as exc:
            app.logger.error(
                "Webhook %s for %s rejected on order %s: %s",
                event_type,
                intent_id,
                order_object_id,
                exc.message,
            )
            return "rejected"
        except NotFound:
            app.logger.warning("Webhook %s: order %s not found", event_type, order_object_id)
            return "ignored"

        if not applied:
            app.logger.info(
                "Webhook %s: order %s already settled, nothing to apply", event_type, order_object_id
            )
            return "already_applied"
        app.logger.info("Webhook %s applied to order %s", event_type, order_object_id)
        return "applied"

    @app.route("/api/payments/webhook", methods=["POST"])
    def payment_webhook():
        event = payment_provider().construct_event(
            request.get_data(), request.headers.get("Stripe-Signature")
        )
        event_id = event.get("id")
        event_type = event.get("type")

        if event_id and db.payment_events.find_one({"_id": event_id}):
            app.logger.warning("Webhook event %s already processed", event_id)
            return jsonify({"received": True, "status": "duplicate"})

        if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
            data = event.get("data")
            intent = data.get("object") if isinstance(data, dict) else None
            if not isinstance(intent, dict):
                intent = {}
            outcome = handle_payment_event(event_type, intent)
        else:
            app.logger.info("Unhandled event type %s", event_type)
            outcome = "ignored"

        if event_id:
            try:
                db.payment_events.insert_one(
                    {"_id": event_id, "type": event_type, "outcome": outcome, "receivedAt": utcnow()}
                )
            except DuplicateKeyError:
                app.logger.warning("Webhook event %s recorded concurrently", event_id)

        return jsonify({"received": True, "status": outcome})

    return app

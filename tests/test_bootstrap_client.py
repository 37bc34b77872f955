from scripts.bootstrap_client import bootstrap_client, bootstrap_user
from ssocenter.service.users import UserDirectory
from ssocenter.storage.memory import MemoryStore


def test_registers_new_client_with_generated_secret():
    store = MemoryStore()

    result = bootstrap_client(store, "reports", "https://reports.example.com/cb")

    assert result["status"] == "created"
    client = store.get_client("reports")
    assert client.redirect_uri == "https://reports.example.com/cb"
    assert client.client_secret == result["client_secret"]
    assert len(result["client_secret"]) >= 40


def test_existing_client_is_left_alone():
    store = MemoryStore()
    bootstrap_client(store, "reports", "https://a/cb", client_secret="first")

    result = bootstrap_client(store, "reports", "https://b/cb", client_secret="second")

    assert result["status"] == "exists"
    assert store.get_client("reports").client_secret == "first"


def test_dry_run_changes_nothing():
    store = MemoryStore()
    users = UserDirectory(store)

    assert bootstrap_client(store, "reports", "https://a/cb", dry_run=True)["status"] == "dry_run"
    assert bootstrap_user(users, "bob", "bob@example.com", "pw", dry_run=True)["status"] == "dry_run"
    assert store.get_client("reports") is None
    assert store.get_user_by_username("bob") is None


def test_bootstrap_user_creates_login():
    store = MemoryStore()
    users = UserDirectory(store)

    result = bootstrap_user(
        users, "bob", "bob@example.com", "Str0ng-Passw0rd", roles=["admin"]
    )

    assert result["status"] == "created"
    assert users.validate_user("bob", "Str0ng-Passw0rd").id == result["user_id"]
    assert users.get_user_roles(result["user_id"]) == ["admin"]
    assert bootstrap_user(users, "BOB", "x@example.com", "pw")["status"] == "exists"

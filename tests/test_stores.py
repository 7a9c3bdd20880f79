import json

from security.secret_store import SecretStore
from storage.preferences import HOME_NETWORK_SCOPE, SAVED_BRIDGE_NAME, PreferenceStore


def test_preferences_persist_across_instances(tmp_path):
    path = tmp_path / "prefs.json"
    store = PreferenceStore(path)
    assert store.get(SAVED_BRIDGE_NAME) is None

    store.set(SAVED_BRIDGE_NAME, "Bridge1")
    store.set(HOME_NETWORK_SCOPE, "192.168.1")

    reloaded = PreferenceStore(path)
    assert reloaded.get(SAVED_BRIDGE_NAME) == "Bridge1"
    assert reloaded.get(HOME_NETWORK_SCOPE) == "192.168.1"

    reloaded.delete(SAVED_BRIDGE_NAME)
    assert PreferenceStore(path).get(SAVED_BRIDGE_NAME) is None


def test_preferences_survive_corrupt_file(tmp_path):
    path = tmp_path / "prefs.json"
    path.write_text("{not json")
    store = PreferenceStore(path)
    assert store.snapshot() == {}
    store.set(SAVED_BRIDGE_NAME, "Bridge1")
    assert json.loads(path.read_text()) == {SAVED_BRIDGE_NAME: "Bridge1"}


def test_secret_roundtrip_is_encrypted_at_rest(tmp_path):
    store = SecretStore(tmp_path)
    assert store.save("bridgelink", "Bridge1", b"token-123") is True
    assert b"token-123" not in (tmp_path / "secrets.json").read_bytes()

    reloaded = SecretStore(tmp_path)
    assert reloaded.load("bridgelink", "Bridge1") == b"token-123"
    assert reloaded.load("bridgelink", "Other") is None


def test_secret_delete(tmp_path):
    store = SecretStore(tmp_path)
    store.save("bridgelink", "Bridge1", b"x")
    assert store.delete("bridgelink", "Bridge1") is True
    assert store.delete("bridgelink", "Bridge1") is False
    assert store.load("bridgelink", "Bridge1") is None


def test_legacy_secret_is_migrated_to_account(tmp_path):
    store = SecretStore(tmp_path)
    # Older versions stored the token without an account
    store._entries["bridgelink"] = store._fernet.encrypt(b"legacy").decode("ascii")
    store._save()

    reloaded = SecretStore(tmp_path)
    assert reloaded.load("bridgelink", "Bridge1") == b"legacy"

    data = json.loads((tmp_path / "secrets.json").read_text())
    assert "bridgelink" not in data
    assert "bridgelink|Bridge1" in data

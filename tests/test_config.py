import json
import os
import unittest
from unittest.mock import patch

from duelbridge import config as bridge_config
from duelbridge import constants
from duelbridge.proxy import StaticProxyProvider
from tests._bridge_test_utils import BaseBridgeTest

_ENV_KEYS = ("MAX_TABS", "LMARENA_URL", "PROXY_SERVER_URL", "HEADLESS")


class ConfigTestCase(BaseBridgeTest):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self._env_patch = patch.dict(os.environ, {}, clear=False)
        self._env_patch.start()
        for key in _ENV_KEYS:
            os.environ.pop(key, None)

    async def asyncTearDown(self) -> None:
        self._env_patch.stop()
        await super().asyncTearDown()

    def write_config(self, data) -> None:
        with open(self.config_path, "w") as f:
            json.dump(data, f)


class TestConfigLoading(ConfigTestCase):
    async def test_missing_file_gives_defaults(self) -> None:
        config = bridge_config.get_config()

        self.assertEqual(config, bridge_config.get_default_config())

    async def test_file_values_are_kept_and_normalized(self) -> None:
        self.write_config({"max_concurrent": 3, "max_tabs_allowed": 1, "engine": "netscape", "max_attempts": "x"})

        config = bridge_config.get_config()

        self.assertEqual(config["max_concurrent"], 3)
        self.assertEqual(config["max_tabs_allowed"], 3)
        self.assertEqual(config["engine"], constants.ENGINE_CAMOUFOX)
        self.assertEqual(config["max_attempts"], constants.MAX_ATTEMPTS)

    async def test_corrupt_file_falls_back_to_defaults(self) -> None:
        with open(self.config_path, "w") as f:
            f.write("{broken")

        config = bridge_config.get_config()

        self.assertEqual(config["lmarena_url"], constants.LMARENA_URL)

    async def test_environment_overrides_file(self) -> None:
        self.write_config({"max_concurrent": 1, "headless": True})
        os.environ["MAX_TABS"] = "4"
        os.environ["LMARENA_URL"] = "https://example.test/arena"
        os.environ["PROXY_SERVER_URL"] = "http://proxy.test:3128"
        os.environ["HEADLESS"] = "false"

        config = bridge_config.get_config()

        self.assertEqual(config["max_concurrent"], 4)
        self.assertEqual(config["max_pool_size"], 4)
        self.assertGreaterEqual(config["max_tabs_allowed"], 4)
        self.assertEqual(config["lmarena_url"], "https://example.test/arena")
        self.assertFalse(config["headless"])
        self.assertEqual(config["proxies"][0]["server"], "http://proxy.test:3128")

    async def test_save_config_round_trips(self) -> None:
        config = bridge_config.get_config()
        config["max_concurrent"] = 2

        bridge_config.save_config(config)

        self.assertFalse(os.path.exists(f"{self.config_path}.tmp"))
        self.assertEqual(bridge_config.get_config()["max_concurrent"], 2)


class TestModelsFile(ConfigTestCase):
    async def test_missing_or_corrupt_file_gives_empty_list(self) -> None:
        self.assertEqual(bridge_config.get_models(), [])
        with open(self.models_path, "w") as f:
            f.write('{"not": "a list"}')
        self.assertEqual(bridge_config.get_models(), [])

    async def test_saved_models_round_trip(self) -> None:
        models = [{"id": "m1", "name": "model-one", "organization": "acme"}]

        bridge_config.save_models(models)

        self.assertFalse(os.path.exists(f"{self.models_path}.tmp"))
        self.assertEqual(bridge_config.get_models(), models)


class TestStaticProxyProvider(unittest.TestCase):
    def test_round_robin_and_malformed_entries(self) -> None:
        provider = StaticProxyProvider.from_config({
            "proxies": [
                "http://a.test:1",
                {"server": "http://b.test:2", "username": "u", "password": "p"},
                {"username": "missing-server"},
                42,
            ]
        })

        self.assertEqual(len(provider), 2)
        servers = [provider.get_proxy().server for _ in range(3)]
        self.assertEqual(servers, ["http://a.test:1", "http://b.test:2", "http://a.test:1"])

    def test_credentials_map_to_playwright_options(self) -> None:
        provider = StaticProxyProvider.from_config({
            "proxies": [{"server": "http://b.test:2", "username": "u", "password": "p"}]
        })

        self.assertEqual(
            provider.get_proxy().to_playwright(),
            {"server": "http://b.test:2", "username": "u", "password": "p"},
        )

    def test_no_proxies_means_direct(self) -> None:
        provider = StaticProxyProvider.from_config({"proxies": []})

        self.assertIsNone(provider.get_proxy())

    def test_only_incompatible_proxies(self) -> None:
        provider = StaticProxyProvider.from_config({
            "proxies": [{"server": "http://blocked.test:1", "target_compatible": False}]
        })

        self.assertIsNone(provider.get_proxy(require_target_compatible=True))
        self.assertEqual(provider.get_proxy().server, "http://blocked.test:1")


if __name__ == "__main__":
    unittest.main()

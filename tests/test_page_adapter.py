import unittest

from duelbridge import constants
from duelbridge.errors import ActionTimeout, NavigationFailure
from duelbridge.page_adapter import PlaywrightPageAdapter
from tests._bridge_test_utils import BaseBridgeTest, FakeBrowser, FakeContext, FakePage


class TestPlaywrightPageAdapter(BaseBridgeTest):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.context = FakeContext(FakeBrowser())
        self.page = await self.context.new_page()
        self.adapter = PlaywrightPageAdapter(self.page)

    async def test_navigation_errors_are_classified(self) -> None:
        self.page.goto_error = RuntimeError("Timeout 90000ms exceeded")
        with self.assertRaises(ActionTimeout):
            await self.adapter.navigate(constants.LMARENA_URL)

        self.page.goto_error = RuntimeError("net::ERR_NAME_NOT_RESOLVED")
        with self.assertRaises(NavigationFailure):
            await self.adapter.navigate(constants.LMARENA_URL)

    async def test_type_and_click_use_role_selectors(self) -> None:
        await self.adapter.type_text("prompt_input", "Hello")
        await self.adapter.click("submit")

        self.assertEqual(self.page.filled, [(", ".join(constants.PROMPT_INPUT_SELECTORS), "Hello")])
        self.assertEqual(self.page.clicked, [", ".join(constants.SUBMIT_BUTTON_SELECTORS)])
        with self.assertRaises(KeyError):
            await self.adapter.click("nonexistent")

    async def test_dismiss_only_visible_dialogs(self) -> None:
        self.page.visible_selectors = {constants.DIALOG_DISMISS_SELECTORS[0]}

        dismissed = await self.adapter.dismiss_dialogs()

        self.assertEqual(dismissed, 1)
        self.assertEqual(self.page.clicked, [constants.DIALOG_DISMISS_SELECTORS[0]])

    async def test_challenge_detection(self) -> None:
        self.assertFalse(await self.adapter.detect_challenge())

        self.page.title_text = "Just a moment..."
        self.assertTrue(await self.adapter.detect_challenge())

        self.page.title_text = "LMArena"
        self.page.present_selectors = {constants.CHALLENGE_SELECTORS[0]}
        self.assertTrue(await self.adapter.detect_challenge())

        other = PlaywrightPageAdapter(FakePage())
        other.page.url = "https://challenges.cloudflare.com/cdn-cgi/challenge-platform"
        self.assertTrue(await other.detect_challenge())

    async def test_reads_credential_from_context_cookies(self) -> None:
        self.context.cookie_jar = [{"name": constants.ARENA_AUTH_COOKIE, "value": "jwt"}]

        self.assertEqual(await self.adapter.read_stored_credentials(), "jwt")

    async def test_challenge_params_require_sitekey(self) -> None:
        self.page.evaluate_result = {"sitekey": "", "action": "x"}
        self.assertIsNone(await self.adapter.read_challenge_params())

        self.page.evaluate_result = {"sitekey": "0x4AAA", "action": "x"}
        self.assertEqual((await self.adapter.read_challenge_params())["sitekey"], "0x4AAA")


if __name__ == "__main__":
    unittest.main()

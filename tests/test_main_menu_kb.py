import unittest

import finance_bot


class MainMenuKeyboardTests(unittest.TestCase):
    def test_https_url_gets_webapp_button(self):
        kb = finance_bot.main_menu_kb("https://finance.example.com/app")
        self.assertEqual(len(kb.inline_keyboard), 1)
        button = kb.inline_keyboard[0][0]
        self.assertEqual(button.text, "Открыть финансы")
        self.assertEqual(button.web_app.url, "https://finance.example.com/app")

    def test_plain_http_url_gets_no_button(self):
        kb = finance_bot.main_menu_kb("http://localhost:3003")
        self.assertEqual(kb.inline_keyboard, [])

    def test_missing_url_gets_no_button(self):
        self.assertEqual(finance_bot.main_menu_kb(None).inline_keyboard, [])
        self.assertEqual(finance_bot.main_menu_kb("").inline_keyboard, [])

    def test_require_https_webapp_url(self):
        self.assertEqual(finance_bot.require_https_webapp_url("https://a.b"), "https://a.b")
        self.assertIsNone(finance_bot.require_https_webapp_url("https://"))
        self.assertIsNone(finance_bot.require_https_webapp_url("ftp://a.b"))

    def test_format_telegram_exception_adds_hint(self):
        msg = finance_bot.format_telegram_exception(Exception("Bad Request: chat not found"))
        self.assertIn("press /start", msg)
        self.assertEqual(finance_bot.format_telegram_exception(Exception("other")), "other.")


if __name__ == "__main__":
    unittest.main()

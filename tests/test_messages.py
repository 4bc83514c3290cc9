import unittest

from kimi_gateway.messages import (
    FILE_ATTENTION_PROMPT,
    TEXT_ATTENTION_PROMPT,
    extract_ref_file_urls,
    is_base64_data_url,
    prepare_messages,
    wrap_urls_to_tags,
)
from kimi_gateway.openai_compat import ChatMessage


def _msg(role: str, content) -> ChatMessage:
    return ChatMessage.model_validate({"role": role, "content": content})


class TestPrepareMessages(unittest.TestCase):
    def test_history_is_flattened_with_text_hint_before_last_message(self) -> None:
        messages = [
            _msg("system", "Be brief."),
            _msg("user", "hi"),
            _msg("assistant", "hello"),
            _msg("user", "and now?"),
        ]
        merged = prepare_messages(messages)

        self.assertEqual(len(merged), 1)
        self.assertEqual(merged[0]["role"], "user")
        self.assertEqual(
            merged[0]["content"],
            "system:Be brief.\n"
            "user:hi\n"
            "assistant:hello\n"
            f"system:{TEXT_ATTENTION_PROMPT}\n"
            "user:and now?\n",
        )

    def test_urls_are_wrapped_in_tags(self) -> None:
        merged = prepare_messages([_msg("user", "read https://example.com/page please")])
        self.assertIn(
            'user:read <url id="" type="url" status="" title="" wc="">https://example.com/page</url> please\n',
            merged[0]["content"],
        )

    def test_attachment_in_last_message_selects_file_hint(self) -> None:
        messages = [
            _msg(
                "user",
                [
                    {"type": "text", "text": "summarise"},
                    {"type": "file", "file_url": {"url": "data:text/plain;base64,aGVsbG8="}},
                ],
            )
        ]
        content = prepare_messages(messages)[0]["content"]

        self.assertEqual(content, f"system:{FILE_ATTENTION_PROMPT}\nuser:summarise\n")
        self.assertNotIn("base64", content)

    def test_attachment_in_earlier_message_keeps_text_hint(self) -> None:
        messages = [
            _msg("user", [{"type": "image_url", "image_url": {"url": "https://img.example.com/a.png"}}]),
            _msg("user", "what is it?"),
        ]
        content = prepare_messages(messages)[0]["content"]
        self.assertIn(f"system:{TEXT_ATTENTION_PROMPT}\n", content)

    def test_text_parts_use_message_role(self) -> None:
        messages = [_msg("assistant", [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]), _msg("user", "c")]
        content = prepare_messages(messages)[0]["content"]
        self.assertTrue(content.startswith("assistant:a\nassistant:b\n"))

    def test_empty_conversation(self) -> None:
        self.assertEqual(prepare_messages([]), [{"role": "user", "content": ""}])


class TestAttachmentHelpers(unittest.TestCase):
    def test_extract_ref_file_urls_reads_last_message_only(self) -> None:
        messages = [
            _msg("user", [{"type": "file", "file_url": {"url": "https://old.example.com/a.pdf"}}]),
            _msg(
                "user",
                [
                    {"type": "text", "text": "compare"},
                    {"type": "file", "file_url": {"url": "https://new.example.com/b.pdf"}},
                    {"type": "image_url", "image_url": {"url": "https://new.example.com/c.png"}},
                ],
            ),
        ]
        self.assertEqual(
            extract_ref_file_urls(messages),
            ["https://new.example.com/b.pdf", "https://new.example.com/c.png"],
        )

    def test_extract_ref_file_urls_plain_text(self) -> None:
        self.assertEqual(extract_ref_file_urls([_msg("user", "hi")]), [])
        self.assertEqual(extract_ref_file_urls([]), [])

    def test_is_base64_data_url(self) -> None:
        self.assertTrue(is_base64_data_url("data:image/png;base64,AAAA"))
        self.assertFalse(is_base64_data_url("https://example.com/a.png"))

    def test_wrap_urls_leaves_plain_text(self) -> None:
        self.assertEqual(wrap_urls_to_tags("no links here"), "no links here")


if __name__ == "__main__":
    unittest.main()

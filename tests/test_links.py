from reviewdesk.schemas import Link
from reviewdesk.services.links import decode_links, encode_links


def test_encode_replaces_urls_with_placeholders() -> None:
    encoded = encode_links("See https://example.com/a and http://foo.test/b?x=1 please")

    assert encoded.processed_text == "See [LINK:0] and [LINK:1] please"
    assert [link.url for link in encoded.links] == ["https://example.com/a", "http://foo.test/b?x=1"]
    assert all(link.text == link.url for link in encoded.links)


def test_repeated_url_shares_one_entry() -> None:
    text = "https://a.test/x then again https://a.test/x and https://b.test"
    encoded = encode_links(text)

    assert encoded.processed_text == "[LINK:0] then again [LINK:0] and [LINK:1]"
    assert len(encoded.links) == 2
    assert decode_links(encoded.processed_text, encoded.links) == text


def test_decode_restores_text_with_k_distinct_urls() -> None:
    text = "Cut at https://frame.io/r/1, music from https://music.test/track.mp3\nthanks"
    encoded = encode_links(text)

    assert len(encoded.links) == 2
    assert decode_links(encoded.processed_text, encoded.links) == text


def test_text_without_urls_is_unchanged() -> None:
    encoded = encode_links("Make the logo bigger")
    assert encoded.processed_text == "Make the logo bigger"
    assert encoded.links == []


def test_encoding_twice_keeps_placeholders() -> None:
    first = encode_links("Reference https://example.com/ref here")
    second = encode_links(first.processed_text, first.links)

    assert second.processed_text == first.processed_text
    assert second.links == first.links


def test_url_after_placeholder_prefix_is_not_encoded() -> None:
    encoded = encode_links("[LINK:https://example.com]")
    assert encoded.processed_text == "[LINK:https://example.com]"
    assert encoded.links == []


def test_quote_and_angle_bracket_do_not_exclude_url() -> None:
    encoded = encode_links('"https://a.test/x" and >https://b.test/y')

    assert encoded.processed_text == '"[LINK:0]" and >[LINK:1]'
    assert [link.url for link in encoded.links] == ["https://a.test/x", "https://b.test/y"]


def test_seeded_links_keep_indices_and_append_new_urls() -> None:
    seed = [Link(url="https://old.test", text="old")]
    encoded = encode_links("[LINK:0] plus https://new.test", seed)

    assert encoded.processed_text == "[LINK:0] plus [LINK:1]"
    assert [link.url for link in encoded.links] == ["https://old.test", "https://new.test"]


def test_decode_leaves_unknown_placeholders() -> None:
    assert decode_links("[LINK:0] and [LINK:7]", [{"url": "https://a.test", "text": "a"}]) == "https://a.test and [LINK:7]"

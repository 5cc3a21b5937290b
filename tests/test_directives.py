from autopilot.services.directives import extract_directives, normalize_media_url
from autopilot.services.llm.base import OutboundMedia


class TestSaveOrder:
    def test_extracts_order_and_strips_marker(self):
        reply = 'Done!\n[SAVE_ORDER: {"product_name": "Shoes", "price": "50"}]'
        result = extract_directives(reply)
        assert result.order == {"product_name": "Shoes", "price": "50"}
        assert result.text == "Done!"

    def test_invalid_json_is_still_stripped(self):
        result = extract_directives("Ok [SAVE_ORDER: {not json}] bye")
        assert result.order is None
        assert "SAVE_ORDER" not in result.text


class TestAddLabel:
    def test_labels_lowercased_and_deduplicated(self):
        result = extract_directives("Hi [ADD_LABEL: VIP] there [add_label: vip][ADD_LABEL: followup]")
        assert result.labels == ["vip", "followup"]
        assert result.text == "Hi  there"


class TestImages:
    def test_image_line_becomes_media(self):
        result = extract_directives("Here you go\nIMAGE: Red shoes | https://cdn.example.com/shoes.jpg\n\n\n\nAnything else?")
        assert [m.url for m in result.media] == ["https://cdn.example.com/shoes.jpg"]
        assert result.media[0].title == "Red shoes"
        assert result.text == "Here you go\n\nAnything else?"

    def test_non_image_link_stays_in_text(self):
        reply = "See IMAGE: Catalog | https://example.com/catalog"
        result = extract_directives(reply)
        assert result.media == []
        assert "https://example.com/catalog" in result.text

    def test_drive_link_normalized(self):
        result = extract_directives("IMAGE: Menu | https://drive.google.com/file/d/abc_123/view")
        assert result.media[0].url == "https://drive.google.com/uc?export=view&id=abc_123"

    def test_structured_media_merged_without_duplicates(self):
        structured = [OutboundMedia(url="https://cdn.example.com/a.png", title="A")]
        result = extract_directives("IMAGE: A | https://cdn.example.com/a.png", structured)
        assert len(result.media) == 1
        assert result.media[0] is not structured[0]


class TestNormalizeMediaUrl:
    def test_trailing_punctuation(self):
        assert normalize_media_url("https://cdn.example.com/a.png.") == "https://cdn.example.com/a.png"

    def test_plain_url_unchanged(self):
        assert normalize_media_url("https://cdn.example.com/a.png") == "https://cdn.example.com/a.png"


def test_plain_reply_untouched():
    result = extract_directives("  Thanks for your order!  ")
    assert result.text == "Thanks for your order!"
    assert result.order is None
    assert result.labels == []
    assert result.media == []

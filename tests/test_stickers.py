from __future__ import annotations

import asyncio

import pytest

from fakes import FakeRest
from server.stickers import StickerError, StickerManager, sniff_format, sticker_url, validate_name

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
GIF = b"GIF89a" + b"\x00" * 32


def test_list_reports_slot_usage() -> None:
    rest = FakeRest()
    rest.stickers["g1"] = [{"id": "1", "format_type": 1}, {"id": "2", "format_type": 4}]

    out = asyncio.run(StickerManager(rest).list("g1"))

    assert out["stats"] == {"total": 15, "used": 2, "available": 13}
    assert out["stickers"][1]["url"] == "https://media.discordapp.net/stickers/2.gif"


def test_list_failure_yields_empty_list_and_base_slots() -> None:
    out = asyncio.run(StickerManager(FakeRest()).list("g2"))
    assert out == {"stickers": [], "stats": {"total": 5, "used": 0, "available": 5}}


def test_upload_validates_input() -> None:
    mgr = StickerManager(FakeRest())
    with pytest.raises(StickerError, match="between 2 and 30"):
        asyncio.run(mgr.upload_file("g1", name="x", raw=PNG))
    with pytest.raises(StickerError, match="too large"):
        asyncio.run(mgr.upload_file("g1", name="big", raw=PNG + b"\x00" * (512 * 1024)))
    with pytest.raises(StickerError, match="Unsupported"):
        asyncio.run(mgr.upload_file("g1", name="jpeg", raw=b"\xff\xd8\xff\xe0"))


def test_upload_sends_detected_format() -> None:
    rest = FakeRest()
    asyncio.run(StickerManager(rest).upload_file("g1", name="wave", description="hi", raw=GIF))
    row = rest.created_stickers[0]
    assert row["filename"] == "wave.gif"
    assert row["content_type"] == "image/gif"
    assert row["tags"] == "wave"


def test_clone_copies_existing_sticker() -> None:
    rest = FakeRest()
    rest.sticker_meta["77"] = {"id": "77", "format_type": 1, "tags": "smile", "description": "orig"}
    rest.downloads[sticker_url(rest.sticker_meta["77"])] = PNG

    asyncio.run(StickerManager(rest).clone("g1", "77", name="copy"))

    row = rest.created_stickers[0]
    assert (row["name"], row["filename"], row["tags"], row["description"]) == (
        "copy", "copy.png", "smile", "orig",
    )


def test_clone_unknown_sticker() -> None:
    with pytest.raises(StickerError, match="Sticker not found"):
        asyncio.run(StickerManager(FakeRest()).clone("g1", "404", name="copy"))


def test_delete() -> None:
    rest = FakeRest()
    asyncio.run(StickerManager(rest).delete("g1", "5"))
    assert rest.deleted_stickers == [("g1", "5")]
    with pytest.raises(StickerError):
        asyncio.run(StickerManager(rest).delete("g1", ""))


def test_sniff_and_name_helpers() -> None:
    assert sniff_format(b'  {"v": "5.5"}') == ("json", "application/json")
    assert sniff_format(PNG) == ("png", "image/png")
    assert validate_name("  ok ") == "ok"
    with pytest.raises(StickerError):
        validate_name(None)

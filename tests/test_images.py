import base64
from datetime import date
from pathlib import Path

import pytest
from bs4 import BeautifulSoup

import html2email.images as images

RUN_DATE = date(2024, 12, 1)


def _write_image(path: Path, payload: bytes) -> bytes:
    data = b"\x89PNG\r\n\x1a\n" + payload
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return data


def _create_export(tmp_path: Path, html: str, names=("image1.png", "image2.png", "image3.png")) -> Path:
    source_dir = tmp_path / "export"
    source_dir.mkdir(parents=True, exist_ok=True)
    for name in names:
        _write_image(source_dir / "images" / name, name.encode("utf-8"))
    (source_dir / "newsletter.html").write_text(html, encoding="utf-8")
    return source_dir


class _RecordingHost:
    def __init__(self) -> None:
        self.calls = []

    def upload(self, path: Path) -> str:
        self.calls.append(path.name)
        return f"https://cdn.test/{path.name}"


def test_slugify_and_heading_key():
    assert images.slugify("  Weekly Ride: Dec 1! ") == "weekly-ride-dec-1"
    assert images.heading_key("  Weekly Ride: Dec 1! ") == "weekly-ride-dec-1-"
    assert len(images.heading_key("A very long heading that keeps going and going")) == 30


def test_image_filename_is_deterministic():
    assert images.image_filename(RUN_DATE, "weekly-ride", "main", ".png") == "2024-12-01-news-weekly-ride.png"
    assert images.image_filename(RUN_DATE, "weekly-ride", "extra", "jpg") == "2024-12-01-news-weekly-ride-extra.jpg"
    assert images.image_filename(RUN_DATE, "weekly-ride", "main", ".png") == images.image_filename(
        date(2024, 12, 1), images.slugify("Weekly Ride"), "main", ".png"
    )


def test_extract_images_pairs_run_of_two(tmp_path):
    html = (
        "<body><h1>Bike Brigade</h1><h2>First</h2><p>Story one</p>"
        '<p><span><img src="images/image1.png" alt="one"></span></p>'
        '<p><span><img src="images/image2.png" alt="two"></span></p>'
        '<h2>Second</h2><p><a href="https://example.org/join">[ Join Us ]</a></p></body>'
    )
    source_dir = _create_export(tmp_path, html)
    out_dir = tmp_path / "archive"
    soup = BeautifulSoup(html, "html.parser")

    results = images.extract_images(soup, source_dir, out_dir, RUN_DATE)

    assert [entry.section for entry in results] == ["First", "Second"]
    first, second = results
    assert first.main is None
    assert first.extra.alt == "one"
    assert Path(first.extra.target_filename).name == "2024-12-01-news-first-extra.png"
    assert second.main.alt == "two"
    assert Path(second.main.target_filename).name == "2024-12-01-news-second.png"
    assert second.extra is None
    assert (out_dir / "2024-12-01-news-first-extra.png").read_bytes().endswith(b"image1.png")
    assert (out_dir / "2024-12-01-news-second.png").read_bytes().endswith(b"image2.png")
    assert soup.find_all("img") == []


def test_extract_images_keeps_single_extra_per_section(tmp_path):
    html = (
        "<h2>First</h2>"
        '<img src="images/image1.png" alt="one">'
        '<img src="images/image2.png" alt="two">'
        '<img src="images/image3.png" alt="three">'
        "<h2>Second</h2>"
    )
    source_dir = _create_export(tmp_path, html)
    soup = BeautifulSoup(html, "html.parser")

    first, second = images.extract_images(soup, source_dir, tmp_path / "archive", RUN_DATE)

    assert first.main is None
    assert first.extra.alt == "two"
    assert [record.role for record in first.images] == ["extra"]
    assert second.main.alt == "three"


def test_extract_images_skips_missing_files(tmp_path):
    html = '<h2>Lead</h2><img src="images/missing.png" alt="gone"><h2>Next</h2><p>Text</p>'
    source_dir = _create_export(tmp_path, html, names=())
    soup = BeautifulSoup(html, "html.parser")

    results = images.extract_images(soup, source_dir, tmp_path / "archive", RUN_DATE)

    assert [entry.images for entry in results] == [[], []]
    assert soup.find("img") is None


def test_extract_images_decodes_inline_data(tmp_path):
    payload = b"inline-bytes"
    encoded = base64.b64encode(payload).decode("ascii")
    html = f'<h2>Lead</h2><img src="data:image/png;base64,{encoded}" alt="inline"><h2>Data Story</h2>'
    soup = BeautifulSoup(html, "html.parser")
    out_dir = tmp_path / "archive"

    results = images.extract_images(soup, tmp_path, out_dir, RUN_DATE)

    assert results[1].main.alt == "inline"
    assert (out_dir / "2024-12-01-news-data-story.png").read_bytes() == payload


def test_extract_images_records_emoji_without_slot(tmp_path):
    html = '<h2>Fun</h2><p>Hi <img src="images/smile.png" alt=":smile:"> there</p>'
    source_dir = _create_export(tmp_path, html, names=("smile.png",))
    soup = BeautifulSoup(html, "html.parser")

    (fun,) = images.extract_images(soup, source_dir, tmp_path / "archive", RUN_DATE)

    assert fun.main is None and fun.extra is None
    assert [record.role for record in fun.emojis] == ["emoji"]
    assert soup.find("img")["alt"] == ":smile:"


def test_extract_images_prefers_reencoded_jpg(tmp_path):
    html = '<img src="images/image1.png" alt="one"><h2>Photo</h2>'
    source_dir = _create_export(tmp_path, html, names=("image1.png", "image1.jpg"))
    soup = BeautifulSoup(html, "html.parser")
    out_dir = tmp_path / "archive"

    (photo,) = images.extract_images(soup, source_dir, out_dir, RUN_DATE)

    assert Path(photo.main.target_filename).name == "2024-12-01-news-photo.jpg"
    assert (out_dir / "2024-12-01-news-photo.jpg").read_bytes().endswith(b"image1.jpg")


def test_extract_images_names_are_stable_across_runs(tmp_path):
    html = '<h2>A</h2><img src="images/image1.png"><img src="images/image2.png"><h2>Weekly Ride!</h2>'
    source_dir = _create_export(tmp_path, html)
    out_dir = tmp_path / "archive"

    def _names():
        soup = BeautifulSoup(html, "html.parser")
        results = images.extract_images(soup, source_dir, out_dir, RUN_DATE)
        return [Path(r.target_filename).name for entry in results for r in entry.images]

    first = _names()
    assert first == ["2024-12-01-news-a-extra.png", "2024-12-01-news-weekly-ride.png"]
    assert _names() == first


def test_extract_images_replaced_extra_leaves_no_orphan(tmp_path):
    html = (
        "<h2>First</h2>"
        '<img src="images/image1.png" alt="one">'
        '<img src="images/photo.jpg" alt="two">'
        '<img src="images/image3.png" alt="three">'
        "<h2>Second</h2>"
    )
    source_dir = _create_export(tmp_path, html, names=("image1.png", "photo.jpg", "image3.png"))
    out_dir = tmp_path / "archive"
    soup = BeautifulSoup(html, "html.parser")

    first, _ = images.extract_images(soup, source_dir, out_dir, RUN_DATE)

    assert Path(first.extra.target_filename).name == "2024-12-01-news-first-extra.jpg"
    assert sorted(p.name for p in out_dir.iterdir()) == [
        "2024-12-01-news-first-extra.jpg",
        "2024-12-01-news-second.png",
    ]


def test_plan_section_images_demotes_and_flushes(tmp_path):
    html = (
        "<h1>Bike Brigade</h1><h2>Alpha</h2>"
        '<img src="images/a.png" alt="a"><img src="images/b.png" alt="b">'
        '<h2>Beta</h2><img src="images/c.png" alt="c">'
        '<h1>Other</h1><h3>Gamma</h3><img src="images/d.png" alt="d">'
    )
    source_dir = _create_export(tmp_path, html, names=("a.png", "b.png", "c.png", "d.png"))
    images_dir = tmp_path / "archive"
    soup = BeautifulSoup(html, "html.parser")

    plan = images.plan_section_images(soup, source_dir, images_dir, RUN_DATE)

    assert sorted(plan) == ["alpha", "beta", "gamma"]
    assert plan["alpha"].main.alt == "b"
    assert plan["alpha"].extra is None
    assert plan["beta"].main is None
    assert plan["beta"].extra.alt == "c"
    assert Path(plan["beta"].extra.target_filename).name == "2024-12-01-news-beta-extra.png"
    assert Path(plan["gamma"].main.target_filename).name == "2024-12-01-news-gamma.png"
    assert not images_dir.exists()
    assert len(soup.find_all("img")) == 4


def test_plan_section_images_defaults_to_intro(tmp_path):
    html = '<img src="images/a.png" alt=""><h2>Alpha</h2><img src="images/missing.png"><h2>Beta</h2>'
    source_dir = _create_export(tmp_path, html, names=("a.png",))
    soup = BeautifulSoup(html, "html.parser")

    plan = images.plan_section_images(soup, source_dir, tmp_path / "archive", RUN_DATE)

    assert list(plan) == ["intro"]
    assert plan["intro"].main.alt == "intro"


def test_asset_base_name_strips_prefix_and_extension():
    assert images.asset_base_name("2024-12-01-news-weekly-ride.jpg") == "weekly-ride"
    assert images.asset_base_name("/tmp/x/2024-12-01-news-weekly-ride-extra.png") == "weekly-ride-extra"
    assert images.asset_base_name("logo.gif") == "logo.gif"


def test_local_asset_host_reuses_published_names(tmp_path):
    publish_dir = tmp_path / "public"
    _write_image(publish_dir / "2024-11-24-news-weekly-ride.jpg", b"old")
    host = images.LocalAssetHost(publish_dir, "https://cdn.example.org/news/")

    _write_image(tmp_path / "2024-12-01-news-weekly-ride.jpg", b"new")
    url = host.upload(tmp_path / "2024-12-01-news-weekly-ride.jpg")
    assert url == "https://cdn.example.org/news/2024-11-24-news-weekly-ride.jpg"
    assert not (publish_dir / "2024-12-01-news-weekly-ride.jpg").exists()

    _write_image(tmp_path / "2024-12-01-news-fresh.png", b"fresh")
    fresh_url = host.upload(tmp_path / "2024-12-01-news-fresh.png")
    assert fresh_url == "https://cdn.example.org/news/2024-12-01-news-fresh.png"
    assert (publish_dir / "2024-12-01-news-fresh.png").exists()
    assert host.upload(tmp_path / "2024-12-01-news-fresh.png") == fresh_url


def test_local_asset_host_reports_copy_failures(tmp_path):
    host = images.LocalAssetHost(tmp_path / "public")
    with pytest.raises(images.AssetUploadError) as excinfo:
        host.upload(tmp_path / "2024-12-01-news-missing.png")
    assert "missing" in str(excinfo.value)


def test_local_asset_host_republishes_changed_generic_names(tmp_path):
    publish_dir = tmp_path / "public"
    week_one = tmp_path / "week1" / "images" / "image3.png"
    week_two = tmp_path / "week2" / "images" / "image3.png"
    _write_image(week_one, b"WAVE")
    _write_image(week_two, b"BIKE")

    first_url = images.LocalAssetHost(publish_dir).upload(week_one)
    host = images.LocalAssetHost(publish_dir)
    second_url = host.upload(week_two)

    assert second_url != first_url
    assert Path(first_url).read_bytes().endswith(b"WAVE")
    assert Path(second_url).read_bytes().endswith(b"BIKE")
    assert Path(second_url).name == "image3__1.png"
    assert host.upload(week_two) == second_url
    assert host.upload(week_one) == first_url


def test_publish_images_runs_in_order_and_updates_sources(tmp_path):
    html = (
        '<h2>Fun</h2><p>Hi <img src="images/smile.png" alt=":smile:"></p>'
        '<img src="images/image1.png" alt="one"><h2>Photo</h2>'
    )
    source_dir = _create_export(tmp_path, html, names=("smile.png", "image1.png"))
    soup = BeautifulSoup(html, "html.parser")
    sections = images.extract_images(soup, source_dir, tmp_path / "archive", RUN_DATE)
    host = _RecordingHost()
    progress = []

    images.publish_images(sections, host, progress=lambda i, total, detail: progress.append((i, total)))

    assert host.calls == ["smile.png", "2024-12-01-news-photo.png"]
    assert progress == [(1, 2), (2, 2)]
    assert sections[1].main.url == "https://cdn.test/2024-12-01-news-photo.png"
    assert images.update_image_sources(soup, sections) == 1
    assert soup.find("img")["src"] == "https://cdn.test/smile.png"


def test_publish_images_propagates_upload_errors(tmp_path):
    html = '<img src="images/image1.png" alt="one"><h2>Photo</h2>'
    source_dir = _create_export(tmp_path, html)
    soup = BeautifulSoup(html, "html.parser")
    sections = images.extract_images(soup, source_dir, tmp_path / "archive", RUN_DATE)

    class _FailingHost:
        def upload(self, path):
            raise images.AssetUploadError("Upload rejected", payload='{"status": 400}')

    with pytest.raises(images.AssetUploadError) as excinfo:
        images.publish_images(sections, _FailingHost())
    assert '{"status": 400}' in str(excinfo.value)

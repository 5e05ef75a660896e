import time

from services.manifest import (
    MAX_MANIFEST_CHARS,
    Rendition,
    lowest_bandwidth,
    parse_renditions,
    select_lowest_bandwidth,
)


DASH_MANIFEST = """<?xml version="1.0" encoding="UTF-8"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="static">
  <Period>
    <AdaptationSet mimeType="video/mp4" segmentAlignment="true">
      <Representation id="v720" bandwidth="812000" width="720" height="1280" FBQualityLabel="720p">
        <BaseURL>https://cdn.example.com/v720.mp4?token=a&amp;sig=b</BaseURL>
      </Representation>
      <Representation id="v360" bandwidth="151000" width="360" height="640" FBQualityLabel="360p">
        <BaseURL>https://cdn.example.com/v360.mp4</BaseURL>
      </Representation>
      <Representation id="v540" bandwidth="402000" width="540" height="960" FBQualityLabel="540p">
        <BaseURL>https://cdn.example.com/v540.mp4</BaseURL>
      </Representation>
    </AdaptationSet>
    <AdaptationSet mimeType="audio/mp4">
      <Representation id="a" bandwidth="48000">
        <BaseURL>https://cdn.example.com/audio.mp4</BaseURL>
      </Representation>
    </AdaptationSet>
  </Period>
</MPD>
"""


def test_lowest_bandwidth_video_rendition_is_selected():
    chosen = select_lowest_bandwidth(DASH_MANIFEST, preferred_label=None)

    assert chosen is not None
    assert chosen.bandwidth == 151000
    assert chosen.url == "https://cdn.example.com/v360.mp4"
    assert chosen.quality_label == "360p"
    assert chosen.height == 640


def test_audio_representations_are_ignored():
    urls = [r.url for r in parse_renditions(DASH_MANIFEST)]

    assert "https://cdn.example.com/audio.mp4" not in urls
    assert len(urls) == 3


def test_base_url_entities_are_unescaped():
    renditions = parse_renditions(DASH_MANIFEST)

    assert renditions[0].url == "https://cdn.example.com/v720.mp4?token=a&sig=b"


def test_preferred_label_short_circuits_lower_bandwidth():
    manifest = """
    <MPD><AdaptationSet mimeType="video/mp4">
      <Representation bandwidth="90000"><BaseURL>https://cdn.example.com/tiny.mp4</BaseURL></Representation>
      <Representation bandwidth="300000" FBQualityLabel="240P"><BaseURL>https://cdn.example.com/240.mp4</BaseURL></Representation>
    </AdaptationSet></MPD>
    """

    chosen = select_lowest_bandwidth(manifest)

    assert chosen is not None
    assert chosen.url == "https://cdn.example.com/240.mp4"


def test_malformed_representations_are_skipped():
    manifest = """
    <MPD>
      <Representation bandwidth="abc"><BaseURL>https://cdn.example.com/bad-bandwidth.mp4</BaseURL></Representation>
      <Representation bandwidth="1000"></Representation>
      <Representation width="100"><BaseURL>https://cdn.example.com/no-bandwidth.mp4</BaseURL></Representation>
      <Representation bandwidth="250000"><BaseURL>https://cdn.example.com/good.mp4</BaseURL></Representation>
    </MPD>
    """

    renditions = parse_renditions(manifest)

    assert [r.url for r in renditions] == ["https://cdn.example.com/good.mp4"]
    assert select_lowest_bandwidth(manifest).bandwidth == 250000


def test_url_attribute_and_unclosed_tags_are_tolerated():
    manifest = (
        '<MPD><Representation bandwidth="700" url="https://cdn.example.com/attr.mp4"/>'
        '<Representation bandwidth="500"><BaseURL>https://cdn.example.com/unclosed.mp4'
    )

    chosen = select_lowest_bandwidth(manifest, preferred_label=None)

    assert chosen is not None
    assert chosen.url == "https://cdn.example.com/unclosed.mp4"
    assert len(parse_renditions(manifest)) == 2


def test_garbage_input_returns_none():
    for text in ["", "   ", "not a manifest at all", "<<<>>>&&&", "<MPD></MPD>", None, 12345]:
        assert select_lowest_bandwidth(text) is None


def test_ties_keep_first_seen_order_and_selection_is_deterministic():
    manifest = """
    <MPD>
      <Representation bandwidth="100"><BaseURL>https://cdn.example.com/first.mp4</BaseURL></Representation>
      <Representation bandwidth="100"><BaseURL>https://cdn.example.com/second.mp4</BaseURL></Representation>
    </MPD>
    """

    first = select_lowest_bandwidth(manifest, preferred_label=None)
    second = select_lowest_bandwidth(manifest, preferred_label=None)

    assert first.url == "https://cdn.example.com/first.mp4"
    assert first == second


def test_lowest_bandwidth_skips_unplayable_entries():
    renditions = [
        Rendition(bandwidth=0, url="https://cdn.example.com/zero.mp4"),
        Rendition(bandwidth=500, url=""),
        Rendition(bandwidth=900, url="https://cdn.example.com/ok.mp4"),
    ]

    assert lowest_bandwidth(renditions).url == "https://cdn.example.com/ok.mp4"
    assert lowest_bandwidth([]) is None


def test_non_finite_and_out_of_range_numbers_are_treated_as_missing():
    manifest = """
    <MPD>
      <Representation bandwidth="inf"><BaseURL>https://cdn.example.com/inf.mp4</BaseURL></Representation>
      <Representation bandwidth="1e400" height="1e400"><BaseURL>https://cdn.example.com/huge.mp4</BaseURL></Representation>
      <Representation bandwidth="NaN" width="-inf"><BaseURL>https://cdn.example.com/nan.mp4</BaseURL></Representation>
      <Representation bandwidth="500"><BaseURL>https://cdn.example.com/500.mp4</BaseURL></Representation>
    </MPD>
    """

    chosen = select_lowest_bandwidth(manifest, preferred_label=None)

    assert chosen is not None
    assert chosen.url == "https://cdn.example.com/500.mp4"
    assert [r.url for r in parse_renditions(manifest)] == ["https://cdn.example.com/500.mp4"]


def test_preferred_label_wins_even_without_bandwidth():
    manifest = """
    <MPD><AdaptationSet mimeType="video/mp4">
      <Representation FBQualityLabel="240p"><BaseURL>https://cdn.example.com/240.mp4</BaseURL></Representation>
      <Representation bandwidth="900000" FBQualityLabel="720p"><BaseURL>https://cdn.example.com/720.mp4</BaseURL></Representation>
    </AdaptationSet></MPD>
    """

    chosen = select_lowest_bandwidth(manifest)

    assert chosen is not None
    assert chosen.url == "https://cdn.example.com/240.mp4"
    assert chosen.bandwidth == 0
    # Without the label the bandwidth-less entry is not playable.
    assert select_lowest_bandwidth(manifest, preferred_label="144p").url == "https://cdn.example.com/720.mp4"
    assert [r.url for r in parse_renditions(manifest)] == ["https://cdn.example.com/720.mp4"]


def test_deeply_nested_unclosed_representations_parse_in_linear_time():
    count = 3000
    manifest = "<MPD><AdaptationSet mimeType='video/mp4'>" + "".join(
        f'<Representation bandwidth="{count - i + 100}"><BaseURL>https://cdn.example.com/{i}.mp4</BaseURL>'
        for i in range(count)
    )

    started = time.perf_counter()
    renditions = parse_renditions(manifest)
    chosen = select_lowest_bandwidth(manifest, preferred_label=None)
    elapsed = time.perf_counter() - started

    assert len(renditions) == count
    assert all(r.url == f"https://cdn.example.com/{i}.mp4" for i, r in enumerate(renditions))
    assert all(r.mime_type == "video/mp4" for r in renditions)
    assert chosen.url == f"https://cdn.example.com/{count - 1}.mp4"
    assert elapsed < 2.0


def test_oversized_manifest_is_refused():
    manifest = (
        '<MPD><Representation bandwidth="100" url="https://cdn.example.com/a.mp4"/>'
        + " " * MAX_MANIFEST_CHARS
        + "</MPD>"
    )

    assert parse_renditions(manifest) == []
    assert select_lowest_bandwidth(manifest) is None

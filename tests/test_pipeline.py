"""End-to-end tests for the pipeline stages with scripted providers."""

import pytest

from conftest import (
    HANG,
    ScriptedAdapter,
    image_stream,
    inline_chunk,
    make_grid_png,
    png_color,
    png_response,
    text_stream,
    PANEL_COLORS,
)
from genpipe.errors import ExhaustedRetriesError, SchemaValidationError, UnrecoverableParseError
from genpipe.pipeline.assets import generate_cut_images, generate_reference_images
from genpipe.pipeline.grid import generate_grid_scenes, replace_panel
from genpipe.pipeline.storyboard import analyze
from genpipe.pipeline.video import generate_scene_videos
from genpipe.schemas.generation import InlinePart
from genpipe.schemas.storyboard import CharacterAnalysis, StoryboardDocument
from genpipe.services.providers.base import BufferedResponse
from genpipe.services.providers.veo import END_FRAME, START_FRAME
from genpipe.services.reference_cache import ReferenceImageCache


def _video_ok(request):
    return BufferedResponse(data=b"mp4:" + request.payload.prompt.encode(), mime_type="video/mp4")


async def _scenes(records, project_id):
    rows = await records.query("scenes", projectId=project_id)
    return sorted(rows, key=lambda r: r["sceneIndex"])


# ---------------------------------------------------------------------------
# Storyboard analysis
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_analyze_returns_validated_document(make_invoker, settings):
    adapter = ScriptedAdapter(
        text_stream("```json\n", '{"cuts":[{"cutNumber":1,"description":"The hero walks into the')
    )
    invoker = make_invoker(text_model=adapter)

    document = await analyze(invoker, "Write a storyboard", StoryboardDocument, settings)

    assert document.cuts[0].description == "The hero walks into the"
    request = adapter.requests[0]
    assert request.payload.prompt == "Write a storyboard"
    assert request.max_retries == settings.retries.text_model
    assert request.timeout_ms == settings.timeouts.text_model_ms


@pytest.mark.asyncio
async def test_analyze_raises_on_unusable_output(make_invoker, settings):
    invoker = make_invoker(text_model=ScriptedAdapter(text_stream('{"characters": [{"nam')))

    with pytest.raises(UnrecoverableParseError):
        await analyze(invoker, "Analyze", CharacterAnalysis, settings)


@pytest.mark.asyncio
async def test_analyze_raises_on_zero_items(make_invoker, settings):
    invoker = make_invoker(text_model=ScriptedAdapter(text_stream('{"characters": []}')))

    with pytest.raises(SchemaValidationError):
        await analyze(invoker, "Analyze", CharacterAnalysis, settings)


# ---------------------------------------------------------------------------
# Grid generation and panel replacement
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_grid_scenes_per_cut(make_invoker, settings, blobs, records, grid_3x3):
    adapter = ScriptedAdapter(image_stream(inline_chunk(grid_3x3)))
    invoker = make_invoker(image_model_a=adapter)

    run = await generate_grid_scenes(
        invoker, settings, blobs, records,
        project_id="p1",
        prompt="nine panels",
        layout="3x3",
        mode="per-cut",
        reference_images=[InlinePart(data=b"ref")],
        prompts={0: "open on the harbor"},
    )

    assert run.grid_url == "mem://p1/grid.png"
    assert len(run.panel_urls) == 9
    assert png_color(await blobs.get(run.panel_urls[4])) == PANEL_COLORS[4]
    scenes = await _scenes(records, "p1")
    assert len(scenes) == 9
    assert scenes[0]["startPanelPath"] == "mem://p1/panel-0.png"
    assert scenes[0]["endPanelPath"] is None
    assert scenes[0]["videoPrompt"] == "open on the harbor"
    assert all(s["status"] == "pending" and s["duration"] == 4 for s in scenes)
    assert adapter.requests[0].payload.parts[0].data == b"ref"


@pytest.mark.asyncio
async def test_generate_grid_scenes_cut_to_cut(make_invoker, settings, blobs, records, grid_2x2):
    invoker = make_invoker(image_model_a=ScriptedAdapter(png_response(grid_2x2)))

    run = await generate_grid_scenes(
        invoker, settings, blobs, records,
        project_id="p2", prompt="four panels", layout="2x2", mode="cut-to-cut",
    )

    assert [(s.start_panel_index, s.end_panel_index) for s in run.scenes] == [(0, 1), (1, 2), (2, 3)]
    scenes = await _scenes(records, "p2")
    assert [(s["startPanelPath"], s["endPanelPath"]) for s in scenes] == [
        ("mem://p2/panel-0.png", "mem://p2/panel-1.png"),
        ("mem://p2/panel-1.png", "mem://p2/panel-2.png"),
        ("mem://p2/panel-2.png", "mem://p2/panel-3.png"),
    ]


@pytest.mark.asyncio
async def test_generate_grid_scenes_exhausted(make_invoker, settings, blobs, records):
    settings.timeouts.image_model_a_ms = 5
    invoker = make_invoker(image_model_a=ScriptedAdapter(HANG))

    with pytest.raises(ExhaustedRetriesError):
        await generate_grid_scenes(
            invoker, settings, blobs, records, project_id="p3", prompt="x",
        )
    assert await records.query("scenes") == []


@pytest.mark.asyncio
async def test_replace_panel_cut_to_cut(make_invoker, settings, blobs, records, grid_2x2):
    invoker = make_invoker(image_model_a=ScriptedAdapter(png_response(grid_2x2)))
    await generate_grid_scenes(
        invoker, settings, blobs, records,
        project_id="p4", prompt="x", layout="2x2", mode="cut-to-cut",
    )

    url = await replace_panel(
        blobs, records, settings,
        project_id="p4", panel_index=2, data=b"fresh", mode="cut-to-cut", panel_count=4,
    )

    assert await blobs.get(url) == b"fresh"
    scenes = await _scenes(records, "p4")
    assert scenes[2]["startPanelPath"] == url
    assert scenes[1]["endPanelPath"] == url
    assert len(scenes) == 3


@pytest.mark.asyncio
async def test_replace_last_panel_cut_to_cut_only_touches_previous_scene(settings, blobs, records):
    await records.upsert("scenes", ("p5", 0), {
        "projectId": "p5", "sceneIndex": 0, "startPanelPath": "a", "endPanelPath": "b",
        "duration": 4, "status": "completed",
    })

    url = await replace_panel(
        blobs, records, settings, project_id="p5", panel_index=1, data=b"x", mode="cut-to-cut",
    )

    scenes = await _scenes(records, "p5")
    assert len(scenes) == 1
    assert scenes[0]["endPanelPath"] == url


@pytest.mark.asyncio
async def test_replace_panel_per_cut_creates_missing_scene(settings, blobs, records):
    url = await replace_panel(
        blobs, records, settings, project_id="p6", panel_index=3, data=b"x", mode="per-cut",
    )

    scenes = await _scenes(records, "p6")
    assert len(scenes) == 1
    assert scenes[0]["sceneIndex"] == 3
    assert scenes[0]["startPanelPath"] == url
    assert scenes[0]["status"] == "pending"
    assert scenes[0]["duration"] == 4


# ---------------------------------------------------------------------------
# Scene videos
# ---------------------------------------------------------------------------

async def _seed_cut_to_cut(invoker_factory, settings, blobs, records, project_id, prompts):
    invoker = invoker_factory(image_model_a=ScriptedAdapter(png_response(make_grid_png(400, 400, 2, 2))))
    await generate_grid_scenes(
        invoker, settings, blobs, records,
        project_id=project_id, prompt="x", layout="2x2", mode="cut-to-cut",
        durations={0: 5, 1: 7, 2: 10}, prompts=prompts,
    )


@pytest.mark.asyncio
async def test_scene_videos_complete_and_roll_up(make_invoker, settings, blobs, records):
    await _seed_cut_to_cut(make_invoker, settings, blobs, records, "v1", {0: "a", 1: "b", 2: "c"})
    adapter = ScriptedAdapter(_video_ok)

    report = await generate_scene_videos(
        make_invoker(video_model=adapter), settings, blobs, records,
        project_id="v1", mode="cut-to-cut",
    )

    assert (report.total, report.succeeded, report.failed) == (3, 3, 0)
    scenes = await _scenes(records, "v1")
    assert [s["status"] for s in scenes] == ["completed"] * 3
    assert await blobs.get(scenes[1]["videoPath"]) == b"mp4:b"
    assert sorted(r.config["duration_seconds"] for r in adapter.requests) == [4, 6, 8]
    for request in adapter.requests:
        assert len(request.payload.inline_parts(START_FRAME)) == 1
        assert len(request.payload.inline_parts(END_FRAME)) == 1
        assert request.config["aspect_ratio"] == "9:16"
    assert (await records.query("projects"))[0]["status"] == "completed"


@pytest.mark.asyncio
async def test_failing_scene_is_isolated(make_invoker, settings, blobs, records):
    await _seed_cut_to_cut(make_invoker, settings, blobs, records, "v2", {0: "a", 1: "b"})

    def video(request):
        if request.payload.prompt == "a":
            raise ValueError("content policy")
        return _video_ok(request)

    report = await generate_scene_videos(
        make_invoker(video_model=ScriptedAdapter(video)), settings, blobs, records,
        project_id="v2", mode="cut-to-cut",
    )

    assert (report.succeeded, report.failed) == (1, 2)
    scenes = await _scenes(records, "v2")
    assert scenes[0]["status"] == "error"
    assert "content policy" in scenes[0]["errorMessage"]
    assert scenes[1]["status"] == "completed"
    assert scenes[2]["status"] == "error"
    assert "no video prompt" in scenes[2]["errorMessage"]
    assert (await records.query("projects"))[0]["status"] == "error"


@pytest.mark.asyncio
async def test_rerun_only_picks_unfinished_scenes(make_invoker, settings, blobs, records):
    await _seed_cut_to_cut(make_invoker, settings, blobs, records, "v3", {0: "a", 1: "b", 2: "c"})
    await records.upsert("scenes", ("v3", 0), {"status": "completed", "videoPath": "done"})
    adapter = ScriptedAdapter(_video_ok)

    report = await generate_scene_videos(
        make_invoker(video_model=adapter), settings, blobs, records,
        project_id="v3", mode="cut-to-cut",
    )

    assert report.total == 2
    assert sorted(r.payload.prompt for r in adapter.requests) == ["b", "c"]


@pytest.mark.asyncio
async def test_single_scene_ignores_status(make_invoker, settings, blobs, records):
    await _seed_cut_to_cut(make_invoker, settings, blobs, records, "v4", {0: "a", 1: "b", 2: "c"})
    await records.upsert("scenes", ("v4", 1), {"status": "completed"})
    adapter = ScriptedAdapter(_video_ok)

    report = await generate_scene_videos(
        make_invoker(video_model=adapter), settings, blobs, records,
        project_id="v4", mode="cut-to-cut", scene_index=1,
    )

    assert report.total == 1
    assert [r.payload.prompt for r in adapter.requests] == ["b"]
    # Scenes 0 and 2 are still pending.
    assert (await records.query("projects"))[0]["status"] == "video_generating"


@pytest.mark.asyncio
async def test_per_cut_mode_sends_start_frame_only(make_invoker, settings, blobs, records, grid_2x2):
    invoker = make_invoker(image_model_a=ScriptedAdapter(png_response(grid_2x2)))
    await generate_grid_scenes(
        invoker, settings, blobs, records,
        project_id="v5", prompt="x", layout="2x2", mode="per-cut",
        prompts={i: f"p{i}" for i in range(4)},
    )
    adapter = ScriptedAdapter(_video_ok)

    await generate_scene_videos(
        make_invoker(video_model=adapter), settings, blobs, records,
        project_id="v5", mode="per-cut",
    )

    assert len(adapter.requests) == 4
    assert all(r.payload.inline_parts(END_FRAME) == [] for r in adapter.requests)


@pytest.mark.asyncio
async def test_no_runnable_scenes(make_invoker, settings, blobs, records):
    report = await generate_scene_videos(
        make_invoker(), settings, blobs, records, project_id="empty", mode="per-cut",
    )
    assert report.total == 0
    assert await records.query("projects") == []


# ---------------------------------------------------------------------------
# Reference and cut images
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reference_images_skip_existing(make_invoker, settings, blobs, records):
    await records.upsert("characters", ("p7", "c1"), {"projectId": "p7", "id": "c1", "name": "Mina", "description": "red coat"})
    await records.upsert("characters", ("p7", "c2"), {"projectId": "p7", "id": "c2", "name": "Taro", "description": "tall", "imagePath": "mem://old"})
    adapter = ScriptedAdapter(png_response(b"img"))

    report = await generate_reference_images(
        make_invoker(image_model_a=adapter), settings, blobs, records, project_id="p7",
    )

    assert (report.total, report.succeeded, report.skipped) == (2, 1, 1)
    assert adapter.requests[0].payload.prompt == "red coat"
    assert adapter.requests[0].config == {"image_config": {"aspect_ratio": "1:1"}}
    rows = {r["id"]: r for r in await records.query("characters", projectId="p7")}
    assert rows["c1"]["imagePath"] == "mem://p7/characters/c1.png"
    assert rows["c2"]["imagePath"] == "mem://old"


@pytest.mark.asyncio
async def test_reference_images_explicit_ids_regenerate(make_invoker, settings, blobs, records):
    await records.upsert("backgrounds", ("p8", "b1"), {"projectId": "p8", "id": "b1", "name": "Harbor", "prompt": "harbor at dusk", "imagePath": "mem://old"})
    adapter = ScriptedAdapter(png_response(b"img"))

    report = await generate_reference_images(
        make_invoker(image_model_b=adapter), settings, blobs, records,
        project_id="p8", table="backgrounds", ids=["b1"], provider="image-model-b",
    )

    assert report.succeeded == 1
    assert adapter.requests[0].payload.prompt == "harbor at dusk"
    assert adapter.requests[0].config == {"size": "2048x2048"}


@pytest.mark.asyncio
async def test_cut_images_use_cached_references(make_invoker, settings, blobs, records):
    mina = await blobs.put(b"mina", "image/png", key="refs/mina.png")
    harbor = await blobs.put(b"harbor", "image/png", key="refs/harbor.png")
    await records.upsert("characters", ("p9", "c1"), {"projectId": "p9", "id": "c1", "name": "Mina", "imagePath": mina})
    await records.upsert("backgrounds", ("p9", "b1"), {"projectId": "p9", "id": "b1", "imagePath": harbor})
    for i in range(3):
        await records.upsert("cuts", ("p9", f"k{i}"), {
            "projectId": "p9", "id": f"k{i}", "cutIndex": i,
            "imagePrompt": f"cut {i}", "characters": ["Mina", "Ghost"], "backgroundId": "b1",
        })
    await records.upsert("cuts", ("p9", "k3"), {"projectId": "p9", "id": "k3", "cutIndex": 3})
    adapter = ScriptedAdapter(png_response(b"cut"))
    cache = ReferenceImageCache(blobs)

    report = await generate_cut_images(
        make_invoker(image_model_a=adapter), settings, blobs, records,
        project_id="p9", cache=cache,
    )

    assert (report.total, report.succeeded, report.failed) == (4, 3, 1)
    assert report.errors[0].key == "cut-3"
    for request in adapter.requests:
        assert [p.data for p in request.payload.parts] == [b"mina", b"harbor"]
    assert "char:Mina" in cache and "bg:b1" in cache
    cuts = {r["id"]: r for r in await records.query("cuts", projectId="p9")}
    assert cuts["k0"]["imagePath"] == "mem://p9/cuts/k0.png"
    assert "imagePath" not in cuts["k3"]

"""Pipeline configuration models.

Loaded from ``boardforge.toml`` or ``pyproject.toml`` [tool.boardforge].
Tool-specific behaviour lives here as data; the stages only know how to
run ``ToolInvocation`` templates and move their outputs around.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from boardforge.models.tools import ReportFormat, ToolInvocation

DEFAULT_TRACKED_COUNTERS: list[str] = [
    "violations",
    "unconnected_items",
    "schematic_parity",
]


class ValidationConfig(BaseModel):
    """Checker runs for the gate stage."""

    model_config = ConfigDict(frozen=True)

    checks: list[ToolInvocation] = []
    tracked_counters: list[str] = list(DEFAULT_TRACKED_COUNTERS)


class ExportConfig(BaseModel):
    """Export tool invocations; outputs are stored under their category."""

    model_config = ConfigDict(frozen=True)

    output_root: str = "outputs"  # blob names are relative to this directory
    invocations: list[ToolInvocation] = []


class PreviewImage(BaseModel):
    """An exported image embedded in the release body."""

    model_config = ConfigDict(frozen=True)

    name: str  # blob name inside the preview category, templated
    title: str


class AssetRule(BaseModel):
    """How one artifact category becomes release assets.

    ``archive`` zips the whole category into ``{label}-{SHORT_SHA}.zip``;
    otherwise a single blob is renamed to ``{label}-{SHORT_SHA}{suffix}``.
    """

    model_config = ConfigDict(frozen=True)

    category: str
    label: str
    archive: bool = True


class PublishConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    title_template: str = "CI Build #{sequence}"
    body_header: str = (
        "This is an automated build from the CI pipeline. "
        "Use the files below at your own risk."
    )
    draft: bool = False
    prerelease: bool = True
    preview_category: str = "preview-image"
    previews: list[PreviewImage] = []
    assets: list[AssetRule] = []


class PostprocessConfig(BaseModel):
    """Third-party post-processing over one exported category.

    ``{INPUT_DIR}`` holds the pulled input blobs, ``{OUTPUT_DIR}`` is
    collected into ``output_category`` afterwards.
    """

    model_config = ConfigDict(frozen=True)

    input_category: str = "fabrication"
    output_category: str = "fabrication-postprocessed"
    invocations: list[ToolInvocation] = []


class TagConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    prefix: str = "ci-build-"
    width: int = 4


class PipelineConfig(BaseModel):
    """Project-level configuration for the pipeline."""

    model_config = ConfigDict(frozen=True)

    project_name: str = "board"
    variables: dict[str, str] = {}  # extra substitutions for every tool
    validation: ValidationConfig = ValidationConfig()
    export: ExportConfig = ExportConfig()
    publish: PublishConfig = PublishConfig()
    postprocess: PostprocessConfig = PostprocessConfig()
    tags: TagConfig = TagConfig()

    @classmethod
    def from_toml(cls, path: Path) -> PipelineConfig:
        """Load from a ``boardforge.toml`` or a ``pyproject.toml``."""
        with Path(path).open("rb") as fh:
            data = tomllib.load(fh)
        if "tool" in data:
            data = data["tool"].get("boardforge", {})
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Default KiCad pipeline
# ---------------------------------------------------------------------------

_CI_VARS = [
    "-D", "BRANCH={BRANCH}",
    "-D", "SHORT_SHA={SHORT_SHA}",
    "-D", "LONG_SHA={LONG_SHA}",
    "-D", "IS_CI={IS_CI}",
]
_PCB = "./{PROJECT_NAME}.kicad_pcb"
_SCH = "./{PROJECT_NAME}.kicad_sch"

_TOP_LAYERS = ["F.Silkscreen", "F.Paste", "F.Mask", "F.Fab", "F.Cu"]
_BOTTOM_LAYERS = ["B.Silkscreen", "B.Paste", "B.Mask", "B.Fab", "B.Cu"]

# (layer file suffix, alpha multiplier) in compositing order.
_TOP_STACK = [
    ("F.Cu", "1.00"), ("F.Mask", "0.40"), ("F.Paste", "0.40"),
    ("F.Silkscreen", "0.95"), ("F.Fab", "0.95"), ("Edge.Cuts", "1.00"),
]
_BOTTOM_STACK = [
    ("B.Cu", "1.00"), ("B.Mask", "0.40"), ("B.Paste", "0.40"),
    ("B.Silkscreen", "0.90"), ("B.Fab", "0.95"), ("Edge.Cuts-mirrored", "1.00"),
]


def _drc_check(severity: str) -> ToolInvocation:
    report = f"{{OUTPUT_DIR}}/drc/{{PROJECT_NAME}}-drc-report-{severity}.json"
    return ToolInvocation(
        name=f"drc-{severity}",
        command=[
            "kicad-cli", "pcb", "drc",
            "--format", "json",
            "--schematic-parity",
            f"--severity-{severity}",
            "-o", report,
            *_CI_VARS,
            _PCB,
        ],
        outputs=[report],
        report_format=ReportFormat.JSON,
        gating=severity == "error",
    )


def _svg_layer(layer: str, suffix: str, *, mirror: bool) -> ToolInvocation:
    return ToolInvocation(
        name=f"svg-{suffix}",
        command=[
            "kicad-cli", "pcb", "export", "svg",
            "-o", f"{{OUTPUT_DIR}}/svg/{{PROJECT_NAME}}-{suffix}.svg",
            "--page-size-mode", "2",
            *(["--mirror"] if mirror else []),
            "--layers", layer,
            *_CI_VARS,
            "--mode-single",
            _PCB,
        ],
        outputs=[f"{{OUTPUT_DIR}}/svg/{{PROJECT_NAME}}-{suffix}.svg"],
        category="preview-layers",
    )


def _rasterize(suffix: str) -> ToolInvocation:
    png = f"{{OUTPUT_DIR}}/png/{{PROJECT_NAME}}-{suffix}.png"
    return ToolInvocation(
        name=f"png-{suffix}",
        command=[
            "inkscape",
            "--export-filename", png,
            "--export-dpi", "960",
            f"{{OUTPUT_DIR}}/svg/{{PROJECT_NAME}}-{suffix}.svg",
        ],
        outputs=[png],
        category="preview-image",
        phase=1,
    )


def _composite(name: str, stack: list[tuple[str, str]], *, repage: bool) -> ToolInvocation:
    command = ["convert"]
    for suffix, alpha in stack:
        command += [
            "(", f"{{OUTPUT_DIR}}/png/{{PROJECT_NAME}}-{suffix}.png",
            "-alpha", "set", "-channel", "A", "-evaluate", "multiply", alpha, ")",
        ]
    command += ["-background", "none", "-layers", "merge"]
    if repage:
        command.append("+repage")
    out = f"{{OUTPUT_DIR}}/png/{{PROJECT_NAME}}-{name}.png"
    command.append(out)
    return ToolInvocation(
        name=f"png-{name}",
        command=command,
        outputs=[out],
        category="preview-image",
        phase=2,
    )


def default_kicad_config(project_name: str = "board") -> PipelineConfig:
    """The KiCad 9 DRC/export/release pipeline as configuration."""
    checks = [_drc_check(sev) for sev in ("all", "error", "warning", "exclusions")]

    exports: list[ToolInvocation] = [
        ToolInvocation(
            name="gerbers",
            command=[
                "kicad-cli", "pcb", "export", "gerbers",
                "--subtract-soldermask", "--board-plot-params",
                "-o", "{OUTPUT_DIR}/gerber/",
                *_CI_VARS,
                _PCB,
            ],
            outputs=["{OUTPUT_DIR}/gerber/"],
            category="fabrication",
        ),
        ToolInvocation(
            name="drill",
            command=[
                "kicad-cli", "pcb", "export", "drill",
                "-o", "{OUTPUT_DIR}/drill/",
                "--format", "excellon",
                "--drill-origin", "absolute",
                "--excellon-units", "mm",
                "--excellon-separate-th",
                "--generate-map", "--map-format", "gerberx2",
                _PCB,
            ],
            outputs=["{OUTPUT_DIR}/drill/"],
            category="fabrication",
        ),
    ]
    for side in ("front", "back"):
        label = "top" if side == "front" else "bottom"
        out = f"{{OUTPUT_DIR}}/pnp/{{PROJECT_NAME}}-{label}-pos.csv"
        exports.append(
            ToolInvocation(
                name=f"pos-{label}",
                command=[
                    "kicad-cli", "pcb", "export", "pos",
                    "-o", out,
                    "--side", side, "--format", "csv", "--units", "mm",
                    "--exclude-dnp",
                    _PCB,
                ],
                outputs=[out],
                category="placement",
            )
        )
    exports += [
        ToolInvocation(
            name="step",
            command=[
                "kicad-cli", "pcb", "export", "step",
                "-o", "{OUTPUT_DIR}/step/{PROJECT_NAME}.step",
                "--no-dnp", "--subst-models",
                "--include-tracks", "--include-zones",
                "--include-silkscreen", "--include-soldermask",
                *_CI_VARS,
                _PCB,
            ],
            outputs=["{OUTPUT_DIR}/step/{PROJECT_NAME}.step"],
            category="3d-model-step",
        ),
        ToolInvocation(
            name="vrml",
            command=[
                "kicad-cli", "pcb", "export", "vrml",
                "-o", "{OUTPUT_DIR}/vrml/{PROJECT_NAME}.wrl",
                "--units", "mm",
                "--models-dir", "{PROJECT_NAME}.wrl.modules",
                "--models-relative",
                *_CI_VARS,
                _PCB,
            ],
            outputs=["{OUTPUT_DIR}/vrml/"],
            category="3d-model-vrml",
        ),
    ]
    exports += [_svg_layer(layer, layer, mirror=False) for layer in _TOP_LAYERS]
    exports += [_svg_layer(layer, layer, mirror=True) for layer in _BOTTOM_LAYERS]
    exports += [
        _svg_layer("Edge.Cuts", "Edge.Cuts", mirror=False),
        _svg_layer("Edge.Cuts", "Edge.Cuts-mirrored", mirror=True),
    ]
    for fmt in ("kicadsexpr", "kicadxml"):
        out = f"{{OUTPUT_DIR}}/netlist/{{PROJECT_NAME}}.{fmt}.net"
        exports.append(
            ToolInvocation(
                name=f"netlist-{fmt}",
                command=[
                    "kicad-cli", "sch", "export", "netlist",
                    "-o", out, "--format", fmt,
                    _SCH,
                ],
                outputs=[out],
                category="netlist",
            )
        )
    exports += [
        ToolInvocation(
            name="schematic-pdf",
            command=[
                "kicad-cli", "sch", "export", "pdf",
                "-o", "{OUTPUT_DIR}/schematic/{PROJECT_NAME}-schematic.pdf", "-n",
                _SCH,
            ],
            outputs=["{OUTPUT_DIR}/schematic/{PROJECT_NAME}-schematic.pdf"],
            category="schematic",
        ),
        ToolInvocation(
            name="bom",
            command=[
                "kicad-cli", "sch", "export", "bom",
                "-o", "{OUTPUT_DIR}/bom/{PROJECT_NAME}-bom.csv",
                "--format-preset", "CSV",
                # ${...} are KiCad text variables, escaped from substitution
                "--fields", "Reference,Value,Footprint,${{QUANTITY}},Notes,${{DNP}}",
                "--labels", "Refs,Value,Footprint,Qty,Note,DNP",
                "--group-by", "Reference,Value,Footprint,${{DNP}}",
                _SCH,
            ],
            outputs=["{OUTPUT_DIR}/bom/{PROJECT_NAME}-bom.csv"],
            category="bom",
        ),
    ]
    exports += [
        _rasterize(suffix)
        for suffix in [*_TOP_LAYERS, *_BOTTOM_LAYERS, "Edge.Cuts", "Edge.Cuts-mirrored"]
    ]
    exports.append(
        ToolInvocation(
            name="png-schematic",
            command=[
                "inkscape",
                "--export-filename", "{OUTPUT_DIR}/png/{PROJECT_NAME}-schematic.png",
                "--export-dpi", "384",
                "{OUTPUT_DIR}/schematic/{PROJECT_NAME}-schematic.pdf",
            ],
            outputs=["{OUTPUT_DIR}/png/{PROJECT_NAME}-schematic.png"],
            category="preview-image",
            phase=1,
        )
    )
    exports += [
        _composite("top", _TOP_STACK, repage=True),
        _composite("bottom", _BOTTOM_STACK, repage=False),
    ]

    return PipelineConfig(
        project_name=project_name,
        variables={"JLC_TOOL_DIR": "jlc-tools"},
        validation=ValidationConfig(checks=checks),
        export=ExportConfig(invocations=exports),
        publish=PublishConfig(
            previews=[
                PreviewImage(name="png/{PROJECT_NAME}-top.png", title="Top Layer"),
                PreviewImage(name="png/{PROJECT_NAME}-bottom.png", title="Bottom Layer"),
                PreviewImage(name="png/{PROJECT_NAME}-schematic.png", title="Schematic"),
            ],
            assets=[
                AssetRule(category="fabrication", label="Gerber"),
                AssetRule(category="placement", label="PNP"),
                AssetRule(category="3d-model-step", label="STEP"),
                AssetRule(category="3d-model-vrml", label="VRML"),
                AssetRule(category="netlist", label="Netlist"),
                AssetRule(category="schematic", label="Schematic", archive=False),
                AssetRule(category="bom", label="BOM", archive=False),
            ],
        ),
        postprocess=PostprocessConfig(
            input_category="fabrication",
            output_category="jlc-gerber",
            invocations=[
                ToolInvocation(
                    name="jlc-gerber",
                    command=[
                        "python", "{JLC_TOOL_DIR}/modify.py",
                        "-i", "{INPUT_DIR}",
                        "-o", "{OUTPUT_DIR}",
                        "-r", "{JLC_TOOL_DIR}/rules/rule-kicad-excellon.yml",
                        "-c", "{JLC_TOOL_DIR}/config.yml",
                        "-d", "{JLC_TOOL_DIR}/filetype_defaults.yml",
                    ],
                ),
            ],
        ),
    )

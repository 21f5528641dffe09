"""命令行入口：构建图库识别器 / 对图像进行人脸识别。"""

from __future__ import annotations

import argparse
import json

from pathlib import Path
from typing import Callable, List, Optional

import cv2

from facerec.config import FaceRecConfig, parse_models
from facerec.errors import FaceRecError, NoFacesFound
from facerec.face.dataset import Dataset
from facerec.face.extractor import DescriptorExtractor, InsightFaceExtractor, initialize_models
from facerec.face.fallback import ModelFallbackPolicy
from facerec.face.image_source import AutoImageSource, ImageSource
from facerec.face.recognizer import Recognizer
from facerec.utils.draw import annotate_image
from facerec.utils.log import get_logger, set_debug

logger = get_logger(__name__)

ExtractorFactory = Callable[[FaceRecConfig], DescriptorExtractor]


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--models", "-m", default=None, help="检测模型优先级，逗号分隔，如 insightface,insightface_tiled,yolo")
    parser.add_argument("--primary-model", default=None, help="多人脸检测使用的模型（默认取优先级第一个）")
    parser.add_argument("--recognition-model", default=None, help="InsightFace 模型包名称（默认 buffalo_l）")
    parser.add_argument("--models-root", default=None, help="InsightFace 模型目录")
    parser.add_argument("--device", choices=["auto", "cpu", "gpu"], default=None, help="计算设备（默认 auto）")
    parser.add_argument("--debug", action="store_true", help="输出调试日志")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="facerec", description="人脸识别：图库构建与识别")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="从图库目录或清单构建识别器 JSON")
    src = build.add_mutually_exclusive_group(required=True)
    src.add_argument("--gallery", "-g", help="图库路径，包含按人员命名的子目录")
    src.add_argument("--manifest", help="JSON 清单：[{label, image_ref}, ...]")
    build.add_argument("--output", "-o", required=True, help="识别器 JSON 输出路径")
    build.add_argument("--threshold", "-t", type=float, default=None, help="距离阈值")
    build.add_argument("--workers", type=int, default=None, help="并发提取的线程数")
    build.add_argument("--merge-labels", action="store_true", help="同名标签合并为一个多描述子集合")
    _add_common(build)

    rec = sub.add_parser("recognize", help="使用识别器 JSON 识别图像中的人脸")
    rec.add_argument("images", nargs="+", help="图像路径或 URL")
    rec.add_argument("--recognizer", "-r", required=True, help="识别器 JSON 路径")
    rec.add_argument("--output-dir", default=None, help="标注结果图像输出目录")
    rec.add_argument("--output-json", "-j", default=None, help="识别结果 JSON 输出路径")
    rec.add_argument("--debug-identify", action="store_true", help="输出每张人脸的 top-k 候选及距离，用于调试阈值")
    rec.add_argument("--top-k", type=int, default=5, help="--debug-identify 输出的候选数量")
    _add_common(rec)

    return parser


def config_from_args(args: argparse.Namespace) -> FaceRecConfig:
    config = FaceRecConfig.from_env()
    changes = {
        "device": args.device,
        "recognition_model": args.recognition_model,
        "models_root": Path(args.models_root) if args.models_root else None,
        "distance_threshold": getattr(args, "threshold", None),
        "max_workers": getattr(args, "workers", None),
    }
    if args.models or args.primary_model:
        priority = parse_models(args.models) if args.models else config.model_priority
        if args.primary_model:
            primary = parse_models(args.primary_model)[0]
        else:
            primary = priority[0]
        # --models replaces the enabled set, --primary-model alone extends it
        base = priority if args.models else config.enabled_models
        enabled = tuple(dict.fromkeys(base + priority + (primary,)))
        changes.update(model_priority=priority, enabled_models=enabled, primary_model=primary)
    return config.with_overrides(**changes).validate()


def _load_manifest(path: str) -> list:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("images") or data.get("entries") or []
    return list(data)


def run_build(args, config: FaceRecConfig, policy: ModelFallbackPolicy, image_source: ImageSource) -> int:
    if args.gallery:
        dataset = Dataset.from_directory(args.gallery)
    else:
        dataset = Dataset()
        dataset.bulk_import(_load_manifest(args.manifest))

    report = dataset.to_gallery(policy, image_source, max_workers=config.max_workers)
    for entry, reason in report.skipped:
        logger.warning(f"  ❌ {entry.label}: {reason}")
    if len(report.gallery) == 0:
        logger.error("没有任何图像检测到人脸，无法构建识别器")
        return 1

    recognizer = Recognizer.from_report(report, config.distance_threshold, merge_labels=args.merge_labels)
    recognizer.save(args.output)
    logger.info(f"识别器构建完成: {len(recognizer.gallery)} 个集合, 跳过 {report.skipped_count} 张图像")
    return 0


def run_recognize(args, policy: ModelFallbackPolicy, image_source: ImageSource) -> int:
    recognizer = Recognizer.load(args.recognizer)
    out_dir = Path(args.output_dir) if args.output_dir else None
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)

    summary = {}
    failed = 0
    for ref in args.images:
        try:
            image = image_source.fetch_or_load(ref)
            results = recognizer.recognize_image(image, policy, image_ref=ref)
        except NoFacesFound:
            logger.warning(f"在 {ref} 中未检测到人脸")
            summary[ref] = []
            continue
        except FaceRecError as e:
            logger.error(f"识别失败 {ref}: {e}")
            summary[ref] = None
            failed += 1
            continue

        summary[ref] = [r.to_dict() for r in results]
        if args.debug_identify:
            for i, (r, out) in enumerate(zip(results, summary[ref])):
                top = recognizer.top_k(r.detection, k=args.top_k)
                out["top_k"] = [{"label": label, "distance": dist} for label, dist in top]
                logger.info(f"  人脸 {i + 1} top-{len(top)}: " + ", ".join(f"{label}={dist:.4f}" for label, dist in top))
        if out_dir is not None:
            out_path = out_dir / f"output_{Path(str(ref)).stem}.jpg"
            cv2.imwrite(str(out_path), annotate_image(image, results))
            logger.info(f"结果图像已保存至: {out_path}")

    if args.output_json:
        Path(args.output_json).write_text(json.dumps(summary, ensure_ascii=False, indent=2), encoding="utf-8")
    return 1 if failed else 0


def main(
    argv: Optional[List[str]] = None,
    extractor_factory: ExtractorFactory = InsightFaceExtractor,
    image_source: Optional[ImageSource] = None,
) -> int:
    args = build_parser().parse_args(argv)
    if args.debug:
        set_debug(True)

    config = config_from_args(args)
    extractor = extractor_factory(config)
    initialize_models(extractor, config)
    policy = ModelFallbackPolicy.from_config(extractor, config)
    image_source = image_source or AutoImageSource()

    if args.command == "build":
        return run_build(args, config, policy, image_source)
    return run_recognize(args, policy, image_source)


if __name__ == "__main__":
    raise SystemExit(main())

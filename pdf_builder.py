"""
PDF assembly

Turns the downloaded page images into a single PDF, one image per A4 page,
scaled to fit inside the margins and centered.
"""

import os
from pathlib import Path
from typing import Sequence

import pymupdf
from PIL import Image
from tqdm import tqdm

from reporting import ProgressReporter
from schemas import EventKind, PageImage, Placement, ProgressEvent, RunConfig
from utils import AssemblyError, load_config, setup_logger

# ─── LOGGER & CONFIG ────────────────────────────────────────────────────────────────
config = load_config()
logger = setup_logger(__name__, config)

MM_TO_PT = 72 / 25.4


def read_page_image(image_path: Path) -> PageImage:
    """Read the pixel dimensions of an image without decoding its pixel data.

    Raises:
        OSError: If the file is missing or not a recognisable image.
        ValueError: If the image reports non-positive dimensions.
    """
    # Image.open only parses the header, pixels are loaded lazily
    with Image.open(image_path) as img:
        width, height = img.size
    return PageImage(width_pixels=width, height_pixels=height)


def compute_placement(image: PageImage, page_width: float, page_height: float, margin: float) -> Placement:
    """Scale an image uniformly to fit inside the page margins and center it.

    The whole image stays visible, at least one axis touches the margin box.

    Args:
        image (PageImage): Pixel dimensions of the source image.
        page_width (float): Page width in millimetres.
        page_height (float): Page height in millimetres.
        margin (float): Margin on every side in millimetres.

    Returns:
        Placement: Position and size of the image on the page, in millimetres.

    Example:
        >>> compute_placement(PageImage(width_pixels=1000, height_pixels=1000), 210, 297, 5)
        Placement(x=5.0, y=48.5, width=200.0, height=200.0)
    """
    avail_width = page_width - 2 * margin
    avail_height = page_height - 2 * margin
    ratio = image.aspect_ratio

    if avail_width / avail_height > ratio:
        # taller than the box, height is the constraint
        final_height = avail_height
        final_width = final_height * ratio
    else:
        final_width = avail_width
        final_height = final_width / ratio

    return Placement(
        x=margin + (avail_width - final_width) / 2,
        y=margin + (avail_height - final_height) / 2,
        width=final_width,
        height=final_height,
    )


def placement_rect(placement: Placement) -> pymupdf.Rect:
    return pymupdf.Rect(
        placement.x * MM_TO_PT,
        placement.y * MM_TO_PT,
        (placement.x + placement.width) * MM_TO_PT,
        (placement.y + placement.height) * MM_TO_PT,
    )


class PdfAssembler:
    def __init__(self, run_config: RunConfig, reporter: ProgressReporter):
        self.config = run_config
        self.reporter = reporter

    def assemble(self, image_paths: Sequence[Path], output_path: Path) -> int:
        """Build the output PDF from page images, in the given order.

        Images that cannot be read are skipped and produce no page. The PDF is
        written to a temporary file first and renamed into place, so the output
        path either holds a complete document or nothing new.

        Args:
            image_paths (Sequence[Path]): Ordered page image files.
            output_path (Path): Where the finished PDF goes.

        Returns:
            int: Number of pages in the written PDF.

        Raises:
            AssemblyError: If no page could be placed or the PDF cannot be written.
        """
        output_path = Path(output_path)
        total = len(image_paths)
        page_width_pt = self.config.page_width_mm * MM_TO_PT
        page_height_pt = self.config.page_height_mm * MM_TO_PT

        self.reporter.report(ProgressEvent(
            kind=EventKind.ASSEMBLY_START,
            message=f"building {output_path} from {total} image(s)",
            data={"images": total},
        ))

        doc = pymupdf.open()
        try:
            for index, image_path in enumerate(
                tqdm(image_paths, desc="Building PDF", unit="page", leave=False), start=1
            ):
                image_path = Path(image_path)
                try:
                    page_image = read_page_image(image_path)
                except (OSError, ValueError, Image.DecompressionBombError) as e:
                    self._skip(image_path, f"cannot decode: {e}")
                    continue

                placement = compute_placement(
                    page_image,
                    self.config.page_width_mm,
                    self.config.page_height_mm,
                    self.config.margin_mm,
                )
                page = doc.new_page(width=page_width_pt, height=page_height_pt)
                try:
                    page.insert_image(placement_rect(placement), filename=str(image_path))
                except Exception as e:
                    # header was fine but the image data is not
                    doc.delete_page(page.number)
                    self._skip(image_path, f"cannot embed: {e}")
                    continue

                if index % self.config.progress_every == 0:
                    self.reporter.report(ProgressEvent(
                        kind=EventKind.ASSEMBLY_PROGRESS,
                        message=f"{index}/{total} images",
                        data={"done": index, "total": total},
                    ))

            page_count = doc.page_count
            if page_count == 0:
                raise AssemblyError(f"None of the {total} image(s) could be placed, nothing to write")

            self._save(doc, output_path)
        finally:
            doc.close()

        self.reporter.report(ProgressEvent(
            kind=EventKind.ASSEMBLY_DONE,
            message=f"{output_path} written with {page_count} page(s)",
            data={"pages": page_count, "skipped": total - page_count},
        ))
        return page_count

    def _skip(self, image_path: Path, reason: str) -> None:
        logger.debug("Skipping %s: %s", image_path, reason)
        self.reporter.report(ProgressEvent(
            kind=EventKind.PAGE_SKIPPED,
            message=f"{image_path.name} {reason}",
            data={"file": str(image_path)},
        ))

    def _save(self, doc: pymupdf.Document, output_path: Path) -> None:
        partial_path = output_path.with_name(output_path.name + ".part")
        try:
            doc.save(str(partial_path), garbage=3, deflate=True)
            os.replace(partial_path, output_path)
        except Exception as e:
            try:
                partial_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not remove partial output %s", partial_path)
            raise AssemblyError(f"Cannot write {output_path}: {e}")

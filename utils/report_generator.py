"""
HTML report of duplicate groups
"""

import html
import logging
from pathlib import Path
from typing import List, Optional

from core.models import DuplicateGroup, PhotoAsset
from utils.file_utils import format_file_size

logger = logging.getLogger(__name__)


def _file_size(path: Optional[str]) -> Optional[int]:
    if not path:
        return None
    try:
        return Path(path).stat().st_size
    except OSError:
        return None


class DuplicateReportGenerator:
    """
    Generate reports for duplicate grouping results
    """

    def generate_report(self, groups: List[DuplicateGroup],
                        output_path: str = "duplicate_report.html",
                        dry_run: bool = False) -> Path:
        """
        Write an HTML page listing each group's canonical photo and the
        members that would be (or were) demoted.
        """
        total_duplicates = sum(len(g.members) - 1 for g in groups)
        space_savings = self._calculate_space_savings(groups)
        mode = " (dry run)" if dry_run else ""

        stats_html = f"""
        <div class="statistics">
            <h2>Duplicate Detection Summary{mode}</h2>
            <p><strong>Total duplicate groups:</strong> {len(groups)}</p>
            <p><strong>Total duplicate files:</strong> {total_duplicates}</p>
            <p><strong>Potential space savings:</strong> {format_file_size(space_savings)}</p>
        </div>
        """

        groups_html = "<div class='duplicate-groups'>"
        for group in groups:
            groups_html += self._create_group_html(group)
        groups_html += "</div>"

        final_html = self._create_html_template()
        final_html = final_html.replace("{{STATS}}", stats_html)
        final_html = final_html.replace("{{GROUPS}}", groups_html)

        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(final_html, encoding='utf-8')

        logger.info("Report generated: %s", output)
        return output

    def _calculate_space_savings(self, groups: List[DuplicateGroup]) -> int:
        """Bytes freed by removing every non-canonical member"""
        total_size = 0
        for group in groups:
            for photo in group.duplicates:
                total_size += _file_size(photo.file_path) or 0
        return total_size

    def _photo_html(self, photo: PhotoAsset, css_class: str) -> str:
        path = html.escape(photo.file_path or "")
        name = html.escape(photo.file_name or f"photo {photo.id}")
        size = _file_size(photo.file_path)
        size_text = format_file_size(size) if size is not None else "missing"
        taken = photo.taken_at.isoformat(sep=' ') if photo.taken_at else "undated"
        return f"""
            <div class="{css_class}">
                <img src="file://{path}" />
                <p>{name} (id {photo.id})</p>
                <p class="file-info">Size: {size_text} | Taken: {taken}</p>
            </div>
        """

    def _create_group_html(self, group: DuplicateGroup) -> str:
        """Create HTML for a duplicate group"""
        duplicates = group.duplicates
        group_html = f"""
        <div class="duplicate-group">
            <h3>Group {group.group_id} ({group.kind})</h3>
            <h4>Keep (Canonical)</h4>
            {self._photo_html(group.canonical, 'representative')}
            <div class="duplicates-list">
                <h4>Duplicates ({len(duplicates)})</h4>
        """
        for photo in duplicates:
            group_html += self._photo_html(photo, 'duplicate-item')
        group_html += """
            </div>
        </div>
        """
        return group_html

    def _create_html_template(self) -> str:
        """HTML template for report"""
        return """
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <title>Duplicate Detection Report</title>
            <style>
                body { font-family: Arial, sans-serif; margin: 20px; }
                .statistics { background: #f0f0f0; padding: 20px; border-radius: 5px; }
                .duplicate-group { border: 1px solid #ccc; margin: 20px 0; padding: 15px; }
                .representative { background: #e8f5e9; padding: 10px; }
                .duplicates-list { display: grid; grid-template-columns: repeat(auto-fill, minmax(200px, 1fr)); gap: 10px; margin-top: 10px; }
                .duplicate-item { border: 1px solid #ddd; padding: 10px; text-align: center; }
                img { max-width: 100%; height: auto; max-height: 200px; object-fit: contain; }
                .file-info { font-size: 0.9em; color: #666; }
            </style>
        </head>
        <body>
            <h1>Photo Duplicate Report</h1>
            {{STATS}}
            {{GROUPS}}
        </body>
        </html>
        """

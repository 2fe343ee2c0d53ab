"""桌面集成：XDG 桌面入口与图标

包内自带 .desktop 文件时以其为模板合并，Exec / Icon / Terminal 始终由
upstream 覆盖，指向受管的可执行文件与图标。
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from upstream.utils.yaml_io import atomic_write

logger = logging.getLogger(__name__)


@dataclass
class DesktopEntry:
    name: str = ""
    comment: str = ""
    exec: str = ""
    icon: str = ""
    categories: str = ""
    terminal: bool = False
    extras: dict[str, str] = field(default_factory=dict)

    _KNOWN = {
        "Name": "name", "Comment": "comment", "Exec": "exec",
        "Icon": "icon", "Categories": "categories",
    }

    def set_field(self, key: str, value: str) -> None:
        if key in self._KNOWN:
            setattr(self, self._KNOWN[key], value)
        elif key == "Terminal":
            self.terminal = value.strip().lower() == "true"
        elif key not in ("Type", "Version"):
            self.extras[key] = value

    def merge(self, other: DesktopEntry) -> DesktopEntry:
        """用 other 中非空的字段覆盖自身"""
        return DesktopEntry(
            name=other.name or self.name,
            comment=other.comment or self.comment,
            exec=other.exec or self.exec,
            icon=other.icon or self.icon,
            categories=other.categories or self.categories,
            terminal=other.terminal or self.terminal,
            extras={**self.extras, **other.extras},
        )

    def ensure_name(self, fallback: str) -> None:
        if self.name:
            return
        localized = next((v for k, v in self.extras.items() if k.startswith("Name[")), "")
        self.name = localized or fallback

    def render(self) -> str:
        lines = ["[Desktop Entry]", "Type=Application", "Version=1.0", f"Name={self.name}"]
        if self.comment:
            lines.append(f"Comment={self.comment}")
        lines.append(f"Exec={self.exec}")
        lines.append(f"Icon={self.icon}")
        lines.append(f"Terminal={'true' if self.terminal else 'false'}")
        if self.categories:
            lines.append(f"Categories={self.categories}")
        for k, v in sorted(self.extras.items()):
            if k.startswith(("Exec", "TryExec")):
                continue
            lines.append(f"{k}={v}")
        return "\n".join(lines) + "\n"


def parse_desktop_file(text: str) -> DesktopEntry:
    """只读取 [Desktop Entry] 段"""
    entry = DesktopEntry()
    in_section = False
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("["):
            in_section = line == "[Desktop Entry]"
            continue
        if in_section and "=" in line:
            key, value = line.split("=", 1)
            entry.set_field(key.strip(), value.strip())
    return entry


def install_icon(icons_dir: Path, name: str, icon_file: Path) -> Path:
    icons_dir.mkdir(parents=True, exist_ok=True)
    dest = icons_dir / f"{name}{icon_file.suffix.lower()}"
    shutil.copy2(icon_file, dest)
    logger.info("图标已安装: %s", dest)
    return dest


def write_desktop_entry(
    dest: Path,
    name: str,
    exec_path: Path,
    icon_path: Path | None = None,
    template: Path | None = None,
) -> Path:
    """写入桌面入口（原子替换）"""
    base = DesktopEntry(comment=f"Installed by upstream ({name})")
    if template is not None and template.is_file():
        base = base.merge(parse_desktop_file(template.read_text(encoding="utf-8", errors="replace")))
    base.ensure_name(name)
    base.exec = str(exec_path)
    base.icon = str(icon_path) if icon_path is not None else ""
    base.terminal = False
    atomic_write(dest, base.render())
    logger.info("桌面入口已写入: %s", dest)
    return dest

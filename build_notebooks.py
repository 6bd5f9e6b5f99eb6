#!/usr/bin/env python3
"""
Build .ipynb notebooks from the percent-format scripts in notebooks/.

"# %%" starts a code cell, "# %% [markdown]" a markdown cell whose lines
lose their leading "# ".

python build_notebooks.py --source-dir notebooks --output-dir notebooks
"""

import json
import argparse
from pathlib import Path

CELL_MARKER = "# %%"
MARKDOWN_MARKER = "# %% [markdown]"


def create_cell(cell_type, source, metadata=None):
    """Create a notebook cell"""
    cell = {
        "cell_type": cell_type,
        "metadata": metadata or {},
        "source": source if isinstance(source, list) else [source]
    }
    if cell_type == "code":
        cell["execution_count"] = None
        cell["outputs"] = []
    return cell


def create_notebook_metadata():
    """Standard notebook metadata"""
    return {
        "kernelspec": {
            "display_name": "Python 3",
            "language": "python",
            "name": "python3"
        },
        "language_info": {
            "codemirror_mode": {"name": "ipython", "version": 3},
            "file_extension": ".py",
            "mimetype": "text/x-python",
            "name": "python",
            "nbconvert_exporter": "python",
            "pygments_lexer": "ipython3"
        }
    }


def _strip_markdown(line):
    if line.startswith("# "):
        return line[2:]
    if line.strip() == "#":
        return ""
    return line


def _to_source(lines):
    # Drop blank lines at both ends
    while lines and not lines[0].strip():
        lines = lines[1:]
    while lines and not lines[-1].strip():
        lines = lines[:-1]
    return [line + "\n" for line in lines[:-1]] + lines[-1:]


def parse_percent_script(text):
    """Split a percent-format script into notebook cells"""
    cells = []
    cell_type = "code"
    lines = []

    def flush():
        source = _to_source(lines)
        if source:
            cells.append(create_cell(cell_type, source))

    for line in text.splitlines():
        if line.startswith(CELL_MARKER):
            flush()
            cell_type = "markdown" if line.startswith(MARKDOWN_MARKER) else "code"
            lines = []
            continue
        lines.append(_strip_markdown(line) if cell_type == "markdown" else line)
    flush()

    return cells


def build_notebook(script_path, output_dir):
    """Convert one script and write <stem>.ipynb into output_dir"""
    script_path = Path(script_path)
    notebook = {
        "cells": parse_percent_script(script_path.read_text(encoding="utf-8")),
        "metadata": create_notebook_metadata(),
        "nbformat": 4,
        "nbformat_minor": 4
    }

    output_file = Path(output_dir) / f"{script_path.stem}.ipynb"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(notebook, f, indent=1, ensure_ascii=False)

    print(f"✓ Created {output_file.name} ({len(notebook['cells'])} cells)")
    return output_file


def main(argv=None):
    parser = argparse.ArgumentParser(description="Build notebooks from percent-format scripts")
    parser.add_argument("--source-dir", default="notebooks", help="Directory with the .py scripts")
    parser.add_argument("--output-dir", default=None, help="Where to write .ipynb files (default: source dir)")
    args = parser.parse_args(argv)

    source_dir = Path(args.source_dir)
    output_dir = Path(args.output_dir) if args.output_dir else source_dir
    output_dir.mkdir(parents=True, exist_ok=True)

    scripts = sorted(source_dir.glob("[0-9]*_*.py"))
    if not scripts:
        raise FileNotFoundError(f"No notebook scripts found in {source_dir}")

    print(f"Building {len(scripts)} notebooks...")
    built = [build_notebook(script, output_dir) for script in scripts]
    print(f"\nLocation: {output_dir}/")
    return built


if __name__ == "__main__":
    main()

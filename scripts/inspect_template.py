import argparse

from pptx import Presentation
from pptx.enum.shapes import MSO_SHAPE_TYPE

from pptbind.core.extract.tokens import TOKEN_RE, extract


def shape_tokens(shp):
    xml = shp._element.xml
    found = extract(xml).fields
    # tokens that only appear after healing were split over runs by the editor
    plain = {("#" if m.group(1) == "#" else "") + m.group(2) for m in TOKEN_RE.finditer(xml) if m.group(1) != "/"}
    split = [f for f in found if f not in plain]
    return found, split


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--pptx", required=True)
    ap.add_argument("--all", action="store_true", help="also list shapes without tokens")
    args = ap.parse_args()

    prs = Presentation(args.pptx)

    total_tokens = 0
    total_split = 0
    pictures = 0
    for si, slide in enumerate(prs.slides, start=1):
        print(f"slide {si:>3}: layout={slide.slide_layout.name!r}")
        for idx, shp in enumerate(slide.shapes, start=1):
            if shp.shape_type == MSO_SHAPE_TYPE.PICTURE:
                pictures += 1
            found, split = shape_tokens(shp)
            if not found and not args.all:
                continue
            total_tokens += len(found)
            total_split += len(split)
            mark = f"  split={split}" if split else ""
            print(f"  {idx:>2} {shp.name!r}: {list(found)}{mark}")

    print("slides:", len(prs.slides))
    print("TOTAL tokens:", total_tokens)
    print("TOTAL split tokens:", total_split)
    print("TOTAL pictures:", pictures)


if __name__ == "__main__":
    main()

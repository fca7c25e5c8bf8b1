"""Prompt builders for detection, re-detection and alignment questions."""

from __future__ import annotations

from boundscout.vision.types import DetectedElement

_DETECTION_FORMAT = """
<analysis>
<image_description>one sentence describing the screen</image_description>
<total_buttons_found>2</total_buttons_found>
</analysis>
<detected_buttons>
<button>
<reference_name>submit_button</reference_name>
<description>Blue "Submit" button below the form</description>
<element_type>button</element_type>
<confidence>90</confidence>
<bbox_x>120</bbox_x>
<bbox_y>340</bbox_y>
<bbox_width>80</bbox_width>
<bbox_height>32</bbox_height>
</button>
</detected_buttons>
""".strip()


def detection_prompt() -> str:
    """Prompt asking for every interactive element of a screenshot."""
    return f"""
You are analyzing a screenshot of a software user interface.

Task:
- Find every clickable or interactive element: buttons, links, tabs, menu items,
  checkboxes, toggles and input fields.
- Give each element a short unique reference_name in snake_case.
- Report its bounding box in PIXELS of this image: bbox_x, bbox_y is the top-left
  corner, origin is the top-left of the image.
- confidence is an integer in [0, 100].

Respond ONLY in this XML format, one <button> block per element:
{_DETECTION_FORMAT}

Rules:
- Do not invent elements that are not visible.
- If nothing interactive is visible, return an empty <detected_buttons></detected_buttons>.
""".strip()


def contextual_detection_prompt(element: DetectedElement) -> str:
    """Re-detection prompt for a crop, naming the element being tracked."""
    return (
        detection_prompt()
        + "\n\nSPECIFIC SEARCH CONTEXT:\n"
        + f'I am specifically looking for the element called "{element.reference_name}", '
        + f'described as: "{element.description}". '
        + f'It should be of type "{element.element_type}" and was detected with '
        + f"{element.confidence}% confidence. "
        + "This image is a cropped section of the screenshot. Report ONLY this element, "
        + "with coordinates relative to this cropped image."
    )


def alignment_prompt(element: DetectedElement, attempt: int = 1) -> str:
    """Ask whether the highlighted box lines up with the named element."""
    name = element.reference_name
    prompt = f"""
BUTTON ALIGNMENT VERIFICATION

The image highlights one element with a red bounding box labeled "FOCUS: {name}".
A dashed cross marks the box center and the quadrants are numbered 1 to 4.

Question: does the red bounding box properly cover the actual "{name}" element?
If not, in which direction should the box move to line up with it?

Respond in this XML format:

<alignment_check>
<button_name>{name}</button_name>
<box_aligns_with_button>yes</box_aligns_with_button>
<box_overlaps_button>yes</box_overlaps_button>
<alignment_quality>good</alignment_quality>
<needs_adjustment>no</needs_adjustment>
<adjustment_direction>none</adjustment_direction>
<suggested_shift>none</suggested_shift>
<confidence>95</confidence>
<notes>Button and bounding box align well</notes>
</alignment_check>

Instructions:
- box_aligns_with_button: "yes" or "no"
- box_overlaps_button: "yes" if the box covers at least part of the element
- alignment_quality: "excellent", "good", "poor" or "terrible"
- needs_adjustment: "yes" or "no"
- adjustment_direction: "up", "down", "left", "right", "up-left", "up-right",
  "down-left", "down-right" or "none"
- suggested_shift: plain English, e.g. "shift down and to the left"
- confidence: 0-100
- notes: brief explanation of what you see
""".strip()
    if attempt > 1:
        prompt += (
            f"\n\nRETRY ATTEMPT {attempt}: the box has been moved since the previous check. "
            f'Please be specific about how the box relates to "{name}" now.'
        )
    return prompt

"""兼容入口：`python face_recognizer.py build|recognize ...`。

实现位于 `facerec/` 包内；此文件仅保留薄封装。
"""

from facerec.cli import main

if __name__ == "__main__":
    raise SystemExit(main())

"""Tkinter 图形界面实现。"""

from __future__ import annotations

import logging
import tkinter as tk
from pathlib import Path
from tkinter import filedialog, messagebox, ttk
from typing import Optional

from image_crunch.core.config import COMPRESSION_MODES, MAX_QUALITY, MIN_QUALITY, OUTPUT_FORMATS
from image_crunch.core.exceptions import ImageCrunchError, InvalidConfigurationError, ValidationError
from image_crunch.core.models import COMPLETED, ERROR, PENDING, PROCESSING
from image_crunch.core.notifications import Notifier
from image_crunch.core.scanner import IMAGE_EXTENSIONS
from image_crunch.core.session import JobSessionController
from image_crunch.core.state import SESSION_COMPLETED
from image_crunch.processing.engine import PillowEngine
from image_crunch.utils.formatting import display_name, format_bytes, format_percent
from image_crunch.utils.logging import setup_logging

POLL_INTERVAL_MS = 100

STATUS_LABELS = {
    PENDING: "等待",
    PROCESSING: "处理中",
    COMPLETED: "完成",
    ERROR: "失败",
}


class TextWidgetHandler(logging.Handler):
    """把日志写入只读 Text 控件，超过 max_lines 时丢弃最早的行。"""

    def __init__(self, widget: tk.Text, max_lines: int = 500) -> None:
        super().__init__()
        self._widget = widget
        self._max_lines = max_lines

    def emit(self, record: logging.LogRecord) -> None:
        # 日志可能来自会话工作线程，写入需回到 Tk 主线程
        self._widget.after(0, self._append, self.format(record))

    def _append(self, message: str) -> None:
        if not self._widget.winfo_exists():
            return
        self._widget.configure(state=tk.NORMAL)
        self._widget.insert(tk.END, message + "\n")
        overflow = int(self._widget.index("end-1c").split(".")[0]) - 1 - self._max_lines
        if overflow > 0:
            self._widget.delete("1.0", f"{overflow + 1}.0")
        self._widget.configure(state=tk.DISABLED)
        self._widget.see(tk.END)


class TkNotifier(Notifier):
    """通过消息框提示批处理完成。"""

    def __init__(self, root: tk.Misc) -> None:
        self._root = root

    def send(self, title: str, body: str) -> None:
        self._root.after(0, lambda: messagebox.showinfo(title, body, parent=self._root))


class ImageCrunchApp(tk.Tk):
    """Tkinter 主窗口。"""

    def __init__(self, controller: Optional[JobSessionController] = None) -> None:
        super().__init__()
        self.title("Image Crunch")
        self.geometry("960x720")
        setup_logging()
        self.controller = controller or JobSessionController(PillowEngine(), notifier=TkNotifier(self))
        self.default_dir = Path.home()

        self._build_ui()
        self._attach_log_handler()
        self._refresh_view()
        self.protocol("WM_DELETE_WINDOW", self._handle_close)
        self.after(POLL_INTERVAL_MS, self._poll_events)

    # ---------------------- UI 构建 ---------------------- #

    def _build_ui(self) -> None:
        container = ttk.Frame(self, padding=12)
        container.pack(fill=tk.BOTH, expand=True)

        self._build_error_banner(container)
        self._build_file_section(container)
        self._build_settings_section(container)
        self._build_action_section(container)
        self._build_progress_section(container)

    def _build_error_banner(self, parent: tk.Widget) -> None:
        self.error_frame = ttk.Frame(parent)
        self.error_var = tk.StringVar()
        ttk.Label(self.error_frame, textvariable=self.error_var, foreground="#b91c1c").pack(side=tk.LEFT, fill=tk.X, expand=True)
        ttk.Button(self.error_frame, text="✕", width=3, command=self._dismiss_error).pack(side=tk.RIGHT)

    def _build_file_section(self, parent: tk.Widget) -> None:
        frame = ttk.LabelFrame(parent, text="文件", padding=8)
        frame.pack(fill=tk.BOTH, expand=True)
        self.file_frame = frame

        columns = ("name", "status", "result")
        self.file_tree = ttk.Treeview(frame, columns=columns, show="headings", height=8, selectmode="extended")
        self.file_tree.heading("name", text="文件名")
        self.file_tree.heading("status", text="状态")
        self.file_tree.heading("result", text="结果")
        self.file_tree.column("name", width=360)
        self.file_tree.column("status", width=80, anchor=tk.CENTER)
        self.file_tree.column("result", width=320)
        self.file_tree.pack(side=tk.LEFT, fill=tk.BOTH, expand=True, padx=(0, 8))

        btn_frame = ttk.Frame(frame)
        btn_frame.pack(side=tk.RIGHT, fill=tk.Y)

        self.add_files_button = ttk.Button(btn_frame, text="添加图片", command=self._add_files)
        self.add_files_button.pack(fill=tk.X, pady=2)
        self.add_dir_button = ttk.Button(btn_frame, text="添加目录", command=self._add_directory)
        self.add_dir_button.pack(fill=tk.X, pady=2)
        self.remove_button = ttk.Button(btn_frame, text="移除选中", command=self._remove_selected)
        self.remove_button.pack(fill=tk.X, pady=2)
        self.clear_button = ttk.Button(btn_frame, text="清空列表", command=self._clear_files)
        self.clear_button.pack(fill=tk.X, pady=2)

        self.file_count_var = tk.StringVar()
        ttk.Label(btn_frame, textvariable=self.file_count_var).pack(fill=tk.X, pady=(8, 0))

    def _build_settings_section(self, parent: tk.Widget) -> None:
        frame = ttk.LabelFrame(parent, text="输出设置", padding=8)
        frame.pack(fill=tk.X, pady=8)
        options = self.controller.state.options.options

        ttk.Label(frame, text="输出格式:").grid(row=0, column=0, sticky=tk.W)
        self.format_var = tk.StringVar(value=options.output_format)
        self.format_combo = ttk.Combobox(frame, textvariable=self.format_var, values=OUTPUT_FORMATS, state="readonly", width=10)
        self.format_combo.grid(row=0, column=1, sticky=tk.W)

        ttk.Label(frame, text="质量:").grid(row=0, column=2, sticky=tk.W, padx=(12, 0))
        self.quality_var = tk.IntVar(value=options.quality)
        self.quality_scale = tk.Scale(
            frame,
            from_=MIN_QUALITY,
            to=MAX_QUALITY,
            orient=tk.HORIZONTAL,
            variable=self.quality_var,
            length=200,
        )
        self.quality_scale.grid(row=0, column=3, columnspan=3, sticky=tk.W)

        self.resize_var = tk.BooleanVar(value=options.resize_enabled)
        self.resize_check = ttk.Checkbutton(frame, text="调整尺寸", variable=self.resize_var, command=self._toggle_resize)
        self.resize_check.grid(row=1, column=0, sticky=tk.W, pady=4)
        ttk.Label(frame, text="宽:").grid(row=1, column=1, sticky=tk.E)
        self.width_var = tk.StringVar(value=str(options.resize_width or ""))
        self.width_entry = ttk.Entry(frame, textvariable=self.width_var, width=8)
        self.width_entry.grid(row=1, column=2, sticky=tk.W)
        ttk.Label(frame, text="高:").grid(row=1, column=3, sticky=tk.E)
        self.height_var = tk.StringVar(value=str(options.resize_height or ""))
        self.height_entry = ttk.Entry(frame, textvariable=self.height_var, width=8)
        self.height_entry.grid(row=1, column=4, sticky=tk.W)

        ttk.Label(frame, text="元数据:").grid(row=2, column=0, sticky=tk.W, pady=4)
        self.metadata_var = tk.BooleanVar(value=options.keep_metadata)
        self.metadata_keep = ttk.Radiobutton(frame, text="保留", variable=self.metadata_var, value=True)
        self.metadata_keep.grid(row=2, column=1, sticky=tk.W)
        self.metadata_strip = ttk.Radiobutton(frame, text="移除", variable=self.metadata_var, value=False)
        self.metadata_strip.grid(row=2, column=2, sticky=tk.W)

        ttk.Label(frame, text="压缩模式:").grid(row=3, column=0, sticky=tk.W)
        self.compression_var = tk.StringVar(value=options.compression_mode)
        self.compression_buttons = []
        for idx, mode in enumerate(COMPRESSION_MODES):
            label = "有损" if mode == "lossy" else "无损"
            button = ttk.Radiobutton(frame, text=label, variable=self.compression_var, value=mode)
            button.grid(row=3, column=1 + idx, sticky=tk.W)
            self.compression_buttons.append(button)

        ttk.Label(frame, text="输出目录:").grid(row=4, column=0, sticky=tk.W, pady=4)
        self.output_var = tk.StringVar(value=self.controller.state.options.output_directory)
        self.output_entry = ttk.Entry(frame, textvariable=self.output_var, width=60)
        self.output_var.trace_add("write", self._on_output_changed)
        self.output_entry.grid(row=4, column=1, columnspan=4, sticky=tk.EW, padx=4)
        self.output_button = ttk.Button(frame, text="选择", command=self._select_output)
        self.output_button.grid(row=4, column=5, padx=4)

        frame.columnconfigure(4, weight=1)
        self._toggle_resize()

    def _build_action_section(self, parent: tk.Widget) -> None:
        frame = ttk.Frame(parent)
        frame.pack(fill=tk.X)
        self.start_button = ttk.Button(frame, text="开始处理", command=self._start_processing)
        self.start_button.pack(side=tk.LEFT)
        self.cancel_button = ttk.Button(frame, text="取消", command=self._cancel_processing)
        self.cancel_button.pack(side=tk.LEFT, padx=(8, 0))

    def _build_progress_section(self, parent: tk.Widget) -> None:
        frame = ttk.LabelFrame(parent, text="执行进度", padding=8)
        frame.pack(fill=tk.BOTH, expand=True, pady=(8, 0))

        self.progress_var = tk.DoubleVar(value=0.0)
        self.progress_bar = ttk.Progressbar(frame, variable=self.progress_var, maximum=100)
        self.progress_bar.pack(fill=tk.X, padx=4, pady=4)

        self.progress_text_var = tk.StringVar()
        ttk.Label(frame, textvariable=self.progress_text_var).pack(anchor=tk.W, padx=4)
        self.results_var = tk.StringVar()
        ttk.Label(frame, textvariable=self.results_var, justify=tk.LEFT).pack(anchor=tk.W, padx=4, pady=(4, 4))

        self.log_text = tk.Text(frame, height=8, state=tk.DISABLED)
        self.log_text.pack(fill=tk.BOTH, expand=True, padx=4)

    def _attach_log_handler(self) -> None:
        self._log_handler = TextWidgetHandler(self.log_text)
        self._log_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s"))
        self._log_handler.setLevel(logging.INFO)
        logging.getLogger("image_crunch").addHandler(self._log_handler)

    # ---------------------- 事件处理 ---------------------- #

    def _add_files(self) -> None:
        patterns = " ".join(f"*{ext}" for ext in sorted(IMAGE_EXTENSIONS))
        filenames = filedialog.askopenfilenames(
            title="选择图片", filetypes=[("图像文件", patterns)], initialdir=str(self.default_dir)
        )
        if not filenames:
            return
        self.controller.add_paths(filenames)
        self.default_dir = Path(filenames[0]).parent
        self._refresh_view()

    def _add_directory(self) -> None:
        path = filedialog.askdirectory(title="选择图片目录", initialdir=str(self.default_dir))
        if not path:
            return
        self.controller.add_paths([path])
        self.default_dir = Path(path)
        self._refresh_view()

    def _remove_selected(self) -> None:
        for path in self.file_tree.selection():
            self.controller.remove_item(path)
        self._refresh_view()

    def _clear_files(self) -> None:
        self.controller.clear()
        self._refresh_view()

    def _select_output(self) -> None:
        path = filedialog.askdirectory(title="选择输出目录", initialdir=str(self.default_dir))
        if not path:
            return
        self.output_var.set(str(Path(path).expanduser().resolve()))

    def _on_output_changed(self, *_args: object) -> None:
        if self.controller.is_processing:
            return
        self.controller.set_output_directory(self.output_var.get())
        self._refresh_view()

    def _toggle_resize(self) -> None:
        state = tk.NORMAL if self.resize_var.get() else tk.DISABLED
        self.width_entry.configure(state=state)
        self.height_entry.configure(state=state)

    def _dismiss_error(self) -> None:
        self.controller.dismiss_error()
        self._refresh_view()

    def _start_processing(self) -> None:
        try:
            self._sync_options()
            self.controller.start()
        except ValidationError as exc:
            messagebox.showwarning("提示", str(exc), parent=self)
        except InvalidConfigurationError as exc:
            messagebox.showerror("配置错误", str(exc), parent=self)
        self._refresh_view()

    def _cancel_processing(self) -> None:
        self.controller.cancel()
        self._refresh_view()

    def _sync_options(self) -> None:
        resize = self.resize_var.get()
        self.controller.update_options(
            output_format=self.format_var.get(),
            quality=int(self.quality_var.get()),
            resize_width=self._parse_dimension(self.width_var.get()) if resize else None,
            resize_height=self._parse_dimension(self.height_var.get()) if resize else None,
            keep_metadata=bool(self.metadata_var.get()),
            compression_mode=self.compression_var.get(),
        )
        if not resize:
            self.controller.state.options.set_resize_enabled(False)
        self.controller.set_output_directory(self.output_var.get())

    @staticmethod
    def _parse_dimension(raw: str) -> Optional[int]:
        value = raw.strip()
        if not value:
            return None
        try:
            return int(value)
        except ValueError as exc:
            raise InvalidConfigurationError(f"尺寸必须为整数: {value}") from exc

    def _poll_events(self) -> None:
        try:
            if self.controller.bridge.dispatch_pending():
                self._refresh_view()
        finally:
            self.after(POLL_INTERVAL_MS, self._poll_events)

    def _handle_close(self) -> None:
        if self.controller.is_processing:
            if not messagebox.askyesno("提示", "任务正在处理中，确定要退出吗？", parent=self):
                return
            self.controller.cancel()
        logging.getLogger("image_crunch").removeHandler(self._log_handler)
        self._log_handler.close()
        self.destroy()

    # ---------------------- 视图刷新 ---------------------- #

    def _refresh_view(self) -> None:
        state = self.controller.state
        processing = state.is_processing

        self.file_tree.delete(*self.file_tree.get_children())
        for item in state.registry:
            self.file_tree.insert(
                "",
                tk.END,
                iid=item.path,
                values=(item.display_name, STATUS_LABELS.get(item.status, item.status), self._describe_result(item)),
            )
        self.file_count_var.set(f"共 {len(state.registry)} 个文件")

        widget_state = tk.DISABLED if processing else tk.NORMAL
        for widget in (
            self.add_files_button,
            self.add_dir_button,
            self.remove_button,
            self.clear_button,
            self.output_button,
            self.resize_check,
            self.metadata_keep,
            self.metadata_strip,
            self.quality_scale,
            *self.compression_buttons,
        ):
            widget.configure(state=widget_state)
        self.format_combo.configure(state=tk.DISABLED if processing else "readonly")
        self.start_button.configure(state=tk.NORMAL if state.can_start else tk.DISABLED)
        self.cancel_button.configure(state=tk.NORMAL if processing else tk.DISABLED)

        snapshot = state.progress
        if processing and snapshot is not None:
            self.progress_var.set(snapshot.percent)
            self.progress_text_var.set(
                f"已处理 {snapshot.current} / {snapshot.total}：{display_name(snapshot.current_file)}"
            )
        elif processing:
            self.progress_var.set(0)
            self.progress_text_var.set("处理中...")
        else:
            self.progress_var.set(100 if state.session_state == SESSION_COMPLETED else 0)
            self.progress_text_var.set("")

        self.results_var.set(self._describe_statistics())

        if state.error:
            self.error_var.set(state.error)
            self.error_frame.pack(fill=tk.X, pady=(0, 8), before=self.file_frame)
        else:
            self.error_frame.pack_forget()

    def _describe_statistics(self) -> str:
        state = self.controller.state
        stats = state.statistics
        if state.session_state != SESSION_COMPLETED or stats is None:
            return ""
        lines = [
            f"成功 {stats.successful_files} / {stats.total_files} 个文件",
            f"整体 {format_percent(stats.overall_reduction_percent)}　"
            f"平均 {format_percent(stats.average_reduction_percent)}　"
            f"中位数 {format_percent(stats.median_reduction_percent)}",
            f"{format_bytes(stats.total_original_size)} → {format_bytes(stats.total_output_size)}",
        ]
        if stats.failed_files:
            lines.append(f"失败 {stats.failed_files} 个文件")
        return "\n".join(lines)

    @staticmethod
    def _describe_result(item) -> str:
        if item.status == COMPLETED and item.output_size is not None:
            return f"{format_bytes(item.output_size)}（-{format_percent(item.reduction_percent or 0.0)}）"
        if item.status == ERROR:
            return item.error_message or ""
        return ""


def run_gui() -> None:
    """启动 GUI 应用。"""

    try:
        app = ImageCrunchApp()
    except (tk.TclError, ImageCrunchError) as exc:
        raise SystemExit(f"无法启动图形界面: {exc}") from exc
    app.mainloop()


if __name__ == "__main__":
    run_gui()

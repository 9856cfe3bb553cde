#!/usr/bin/env python3
import argparse
import os.path
import time
from dataclasses import replace

from JumpMat import LabelStyle, MatConfig, MatGenerator, OutFormat, spec_report


def main():
    args_parser = argparse.ArgumentParser()
    example_configs = sorted(MatConfig.example_names())
    args_parser.add_argument('--config',
                             choices=example_configs,
                             default=None,
                             help='Which mat configuration (all by default)')
    args_parser.add_argument('--labels',
                             choices=[s.value for s in LabelStyle],
                             default=None,
                             help='Which label style to render (all by default)')
    args_parser.add_argument('--format',
                             choices=[f.value for f in OutFormat],
                             default=OutFormat.PNG.value,
                             help='Raster output format')
    args_parser.add_argument('--ppm',
                             type=float,
                             default=None,
                             help='Pixels per meter (from each config by default)')
    args_parser.add_argument('--mesh',
                             action='store_true',
                             help='Also export the textured mesh of each mat')
    cli_args = args_parser.parse_args()
    base_dir = os.path.relpath('examples/')
    os.makedirs(base_dir, exist_ok=True)
    label_styles = [LabelStyle(cli_args.labels)] if cli_args.labels else LabelStyle
    out_format = OutFormat(cli_args.format)
    for config_name in ([cli_args.config] if cli_args.config else example_configs):
        print(f'Building example outputs for: {config_name}')
        try:
            start_time = time.process_time()
            config = MatConfig.load(config_name)
            for label_style in label_styles:
                generator = MatGenerator(replace(config, label_style=label_style), cli_args.ppm, seed=0)
                generator.generate()
                print(f' Render time: {round(time.process_time() - start_time, 3)}')
                mat_filename = os.path.join(base_dir, f'{config_name}.JumpMat.{label_style.value}.{out_format.value}')
                generator.save_image(mat_filename, out_format)
                print(f' {label_style.value} output for: {config_name} at: {mat_filename}')
                if cli_args.mesh:
                    generator.mesh.export(os.path.join(base_dir, f'{config_name}.JumpMat.{label_style.value}.glb'))
            specs_filename = os.path.join(base_dir, f'{config_name}.Specs.txt')
            with open(specs_filename, 'w', encoding='utf-8') as f:
                f.write(spec_report(config))
            print(f' Specs output for: {config_name} at: {specs_filename}')
            print(f'Time elapsed: {round(time.process_time() - start_time, 3)}')
        except ValueError:
            print(f'Error processing {config_name}; Skipping')


if __name__ == '__main__':
    main()

"""Default configuration for MNIST GAN training.

``train.py`` starts from DEFAULT_CONFIG and overrides entries from its
command-line flags.
"""

ENGINE_CONFIG = {
    'device': 'cpu',
    'seed': 42,
    'workers': 4,
}

MODEL_CONFIG = {
    'noise_dim': 100,
    'adam_alpha': 0.0002,
    'adam_beta1': 0.5,
    'adam_beta2': 0.999,
    'adam_epsilon': 1e-8,
    'bn_momentum': 0.99,
}

TRAINING_CONFIG = {
    'batch_size': 32,
    'epochs': 10,
    'steps_per_epoch': 1000,
    'log_every': 100,
    'export_every': 100,
    'data_root': './data',
    'data_limit': None,
    'out_dir': 'samples',
}

DEFAULT_CONFIG = {
    **ENGINE_CONFIG,
    **MODEL_CONFIG,
    **TRAINING_CONFIG,
}

import argparse
import logging
import os

from gan_adam import ArchState
from gan_config import DEFAULT_CONFIG
from gan_data import load_mnist
from gan_engine import GANEngine
from gan_export import LossLog, export_png, save_samples
from gan_networks import build_discriminator, build_generator
from gan_tensor import Tensor, TensorMode
from gan_trainer import GANTrainer

logger = logging.getLogger('train')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Train the MNIST GAN')
    parser.add_argument('--device', choices=['cpu', 'cuda'], default=DEFAULT_CONFIG['device'])
    parser.add_argument('--seed', type=int, default=DEFAULT_CONFIG['seed'])
    parser.add_argument('--workers', type=int, default=DEFAULT_CONFIG['workers'])
    parser.add_argument('--batch-size', type=int, default=DEFAULT_CONFIG['batch_size'])
    parser.add_argument('--epochs', type=int, default=DEFAULT_CONFIG['epochs'])
    parser.add_argument('--steps-per-epoch', type=int, default=DEFAULT_CONFIG['steps_per_epoch'])
    parser.add_argument('--log-every', type=int, default=DEFAULT_CONFIG['log_every'])
    parser.add_argument('--export-every', type=int, default=DEFAULT_CONFIG['export_every'])
    parser.add_argument('--lr', type=float, default=DEFAULT_CONFIG['adam_alpha'])
    parser.add_argument('--data-root', default=DEFAULT_CONFIG['data_root'])
    parser.add_argument('--data-limit', type=int, default=DEFAULT_CONFIG['data_limit'])
    parser.add_argument('--out-dir', default=DEFAULT_CONFIG['out_dir'])
    parser.add_argument('--verbose', action='store_true')
    return parser.parse_args(argv)


def make_state(config, lr):
    return ArchState(adam_alpha=lr,
                     adam_beta1=config['adam_beta1'],
                     adam_beta2=config['adam_beta2'],
                     adam_epsilon=config['adam_epsilon'],
                     bn_momentum=config['bn_momentum'])


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(name)s %(levelname)s %(message)s')
    config = dict(DEFAULT_CONFIG)
    os.makedirs(args.out_dir, exist_ok=True)

    engine = GANEngine(args.device, seed=args.seed, workers=args.workers)
    Xt = load_mnist(engine, args.data_root, limit=args.data_limit)
    half = args.batch_size // 2
    G = build_generator(engine, half, make_state(config, args.lr), noise_dim=config['noise_dim'])
    D = build_discriminator(engine, args.batch_size, make_state(config, args.lr))
    trainer = GANTrainer(engine, G, D, Xt, args.batch_size)
    samples = Tensor(engine, (half,) + tuple(G.dimY)[1:], mode=TensorMode.IO)
    loss_log = LossLog(os.path.join(args.out_dir, 'loss.dat'))

    logger.info('Starting training...')
    step = 0
    for epoch in range(1, args.epochs + 1):
        for _ in range(args.steps_per_epoch):
            g_loss, d_loss = trainer.step()
            loss_log.append(epoch, step, g_loss, d_loss)
            step += 1
            if step % args.log_every == 0:
                summary = loss_log.summary(args.log_every)
                g_avg, g_min, g_max = summary['g_loss']
                d_avg, d_min, d_max = summary['d_loss']
                logger.info('Epoch %d step %d  G_loss: %.4f [%.4f, %.4f]  D_loss: %.4f [%.4f, %.4f]',
                            epoch, step, g_avg, g_min, g_max, d_avg, d_min, d_max)
            if step % args.export_every == 0:
                trainer.generate(samples)
                export_png(samples, os.path.join(args.out_dir, f'sample_{step}.png'))
                logger.debug('sample stats: %s', samples.stats())
        trainer.generate(samples)
        save_samples(samples, os.path.join(args.out_dir, f'epoch_{epoch}.png'))

    loss_log.plot(os.path.join(args.out_dir, 'loss_curve.png'))
    trainer.delete()
    G.delete()
    D.delete()
    engine.close()
    logger.info('Training finished after %d steps (G t=%d, D t=%d)', step, G.t, D.t)


if __name__ == '__main__':
    main()
